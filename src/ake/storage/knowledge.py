"""SQLite-backed relational store for knowledge items, chunks, memories and chat.

Every query is scoped by ``owner_id``. Connections are opened per operation
and committed or rolled back by ``_connect``; an in-memory database keeps a
single shared connection guarded by a lock.
"""

import contextlib
import hashlib
import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from ..models import (
    ConnectionRecord,
    KnowledgeChunk,
    KnowledgeItem,
    MemoryRecord,
    Message,
    RetrievedChunk,
    RetrievedMemory,
    TaskRecord,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS owners (
    owner_id TEXT PRIMARY KEY,
    allow_learning INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS knowledge_items (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    source TEXT NOT NULL,
    source_id TEXT NOT NULL,
    url TEXT,
    title TEXT,
    author TEXT,
    created_at TEXT,
    fetched_at TEXT NOT NULL,
    raw_text TEXT,
    raw_json TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    content_hash TEXT NOT NULL,
    deleted_at TEXT,
    UNIQUE (owner_id, source, source_id)
);
CREATE INDEX IF NOT EXISTS idx_items_owner ON knowledge_items (owner_id, source);

CREATE TABLE IF NOT EXISTS knowledge_chunks (
    id TEXT PRIMARY KEY,
    knowledge_item_id TEXT NOT NULL REFERENCES knowledge_items(id),
    owner_id TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    text TEXT NOT NULL,
    token_count INTEGER NOT NULL DEFAULT 0,
    embedding TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    content_hash TEXT NOT NULL,
    deleted_at TEXT,
    UNIQUE (knowledge_item_id, chunk_index)
);
CREATE INDEX IF NOT EXISTS idx_chunks_owner ON knowledge_chunks (owner_id);

CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('fact', 'preference', 'project', 'person')),
    content TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.5,
    source_refs TEXT NOT NULL DEFAULT '{}',
    pinned INTEGER NOT NULL DEFAULT 0,
    embedding TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_memories_owner ON memories (owner_id, pinned, updated_at);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    role TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant', 'tool')),
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id, seq);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    notes TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS connections (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'connected',
    metadata TEXT NOT NULL DEFAULT '{}',
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (owner_id, provider)
);

CREATE TABLE IF NOT EXISTS audit_logs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    action TEXT NOT NULL,
    object_type TEXT NOT NULL,
    object_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_audit_owner ON audit_logs (owner_id, seq);
"""


@dataclass
class UpsertResult:
    id: str
    changed: bool


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _to_json(data: Any) -> str | None:
    if data is None:
        return None
    return json.dumps(data, default=str)


def _from_json(value: str | None, default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _iso(value: datetime | str | None) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.5
    if confidence != confidence:  # NaN
        return 0.5
    return min(1.0, max(0.0, confidence))


def chunk_id_for(knowledge_item_id: str, chunk_index: int) -> str:
    """Stable chunk id so re-ingestion overwrites the same index."""
    return hashlib.sha256(f"{knowledge_item_id}:{chunk_index}".encode()).hexdigest()[:32]


def matches_filters(metadata: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(metadata.get(key) == value for key, value in filters.items())


class KnowledgeStore:
    """Owner-scoped persistence for the engine."""

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        self._shared: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        if self.db_path == ":memory:":
            self._shared = sqlite3.connect(":memory:", check_same_thread=False)
            self._shared.row_factory = sqlite3.Row
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._shared is not None:
            return self._shared
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Yield a connection; commit on success, roll back on error."""
        lock = self._lock if self._shared is not None else contextlib.nullcontext()
        with lock:
            conn = self._get_conn()
            try:
                yield conn
                conn.commit()
            except Exception as e:
                logger.debug(f"Transaction failed, rolling back: {e}")
                conn.rollback()
                raise
            finally:
                if conn is not self._shared:
                    conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        if self._shared is not None:
            self._shared.close()
            self._shared = None

    # === Owners ===

    def get_learning_consent(self, owner_id: str) -> bool:
        """Owners learn from conversations unless they have opted out."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT allow_learning FROM owners WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        return True if row is None else bool(row["allow_learning"])

    def set_learning_consent(self, owner_id: str, allowed: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO owners (owner_id, allow_learning, created_at) VALUES (?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET allow_learning = excluded.allow_learning
                """,
                (owner_id, int(allowed), _now()),
            )

    # === Knowledge items ===

    def upsert_item(
        self,
        owner_id: str,
        source: str,
        source_id: str | None,
        text: str | None,
        raw_json: dict[str, Any] | None,
        metadata: dict[str, Any] | None,
        content_hash: str,
        title: str | None = None,
        url: str | None = None,
        author: str | None = None,
        created_at: datetime | str | None = None,
    ) -> UpsertResult:
        """Insert or update an item keyed by (owner, source, source_id).

        When a row already exists with the same content hash nothing is
        written and ``changed`` is False.
        """
        source_id = source_id or content_hash
        now = _now()
        with self._connect() as conn:
            rows = conn.execute(
                """
                INSERT INTO knowledge_items (
                    id, owner_id, source, source_id, url, title, author,
                    created_at, fetched_at, raw_text, raw_json, metadata, content_hash
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, source, source_id) DO UPDATE SET
                    url = excluded.url,
                    title = excluded.title,
                    author = excluded.author,
                    created_at = excluded.created_at,
                    fetched_at = excluded.fetched_at,
                    raw_text = excluded.raw_text,
                    raw_json = excluded.raw_json,
                    metadata = excluded.metadata,
                    content_hash = excluded.content_hash,
                    deleted_at = NULL
                WHERE knowledge_items.content_hash <> excluded.content_hash
                RETURNING id
                """,
                (
                    uuid.uuid4().hex, owner_id, source, source_id, url, title, author,
                    _iso(created_at), now, text, _to_json(raw_json),
                    _to_json(metadata or {}), content_hash,
                ),
            ).fetchall()
            if rows:
                return UpsertResult(id=rows[0]["id"], changed=True)

            existing = conn.execute(
                "SELECT id FROM knowledge_items WHERE owner_id = ? AND source = ? AND source_id = ?",
                (owner_id, source, source_id),
            ).fetchone()
        return UpsertResult(id=existing["id"], changed=False)

    def create_file_item(
        self,
        owner_id: str,
        object_key: str,
        file_name: str,
        mime_type: str,
    ) -> str:
        """Register a dropped file before it has been parsed.

        Object keys are content-addressed, so a key that is already registered
        means the same bytes were dropped before and the existing row is kept.
        """
        now = _now()
        metadata = {"filename": file_name, "mime_type": mime_type, "status": "pending"}
        with self._connect() as conn:
            rows = conn.execute(
                """
                INSERT INTO knowledge_items (
                    id, owner_id, source, source_id, title, fetched_at, metadata, content_hash
                )
                VALUES (?, ?, 'file_drop', ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, source, source_id) DO NOTHING
                RETURNING id
                """,
                (
                    uuid.uuid4().hex, owner_id, object_key, file_name, now,
                    _to_json(metadata), f"pending:{object_key}",
                ),
            ).fetchall()
            if rows:
                return rows[0]["id"]
            existing = conn.execute(
                "SELECT id FROM knowledge_items WHERE owner_id = ? AND source = 'file_drop' AND source_id = ?",
                (owner_id, object_key),
            ).fetchone()
        return existing["id"]

    def update_item_content(
        self,
        owner_id: str,
        item_id: str,
        raw_text: str,
        metadata: dict[str, Any],
        content_hash: str,
    ) -> bool:
        """Store parsed text for an existing item. Returns False if the hash is unchanged."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE knowledge_items
                SET raw_text = ?, metadata = ?, content_hash = ?, fetched_at = ?, deleted_at = NULL
                WHERE id = ? AND owner_id = ? AND content_hash <> ?
                """,
                (raw_text, _to_json(metadata), content_hash, _now(), item_id, owner_id, content_hash),
            )
            return cursor.rowcount > 0

    def invalidate_item_hash(self, owner_id: str, item_id: str) -> None:
        """Make the next upsert of this item count as changed, whatever its hash."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE knowledge_items SET content_hash = 'stale:' || content_hash
                WHERE id = ? AND owner_id = ? AND content_hash NOT LIKE 'stale:%'
                """,
                (item_id, owner_id),
            )

    def get_item(self, owner_id: str, item_id: str, include_deleted: bool = False) -> KnowledgeItem | None:
        sql = "SELECT * FROM knowledge_items WHERE id = ? AND owner_id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(sql, (item_id, owner_id)).fetchone()
        return self._row_to_item(row) if row else None

    def get_document(self, owner_id: str, item_id: str) -> dict[str, Any] | None:
        """Full text and metadata of a live item, with its live chunk count."""
        item = self.get_item(owner_id, item_id)
        if item is None:
            return None
        with self._connect() as conn:
            count = conn.execute(
                """
                SELECT COUNT(*) FROM knowledge_chunks
                WHERE knowledge_item_id = ? AND owner_id = ? AND deleted_at IS NULL
                """,
                (item_id, owner_id),
            ).fetchone()[0]
        return {
            "item_id": item.id,
            "source": item.source,
            "source_id": item.source_id,
            "title": item.title,
            "url": item.url,
            "author": item.author,
            "text": item.raw_text or "",
            "metadata": item.metadata,
            "chunk_count": count,
        }

    def list_items(self, owner_id: str, source: str | None = None, limit: int = 100) -> list[KnowledgeItem]:
        sql = "SELECT * FROM knowledge_items WHERE owner_id = ? AND deleted_at IS NULL"
        params: list[Any] = [owner_id]
        if source:
            sql += " AND source = ?"
            params.append(source)
        sql += " ORDER BY fetched_at DESC, id LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_item(r) for r in rows]

    def soft_delete_item(self, owner_id: str, item_id: str) -> bool:
        """Soft-delete an item and all of its chunks in one transaction."""
        now = _now()
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE knowledge_items SET deleted_at = ? WHERE id = ? AND owner_id = ? AND deleted_at IS NULL",
                (now, item_id, owner_id),
            )
            conn.execute(
                "UPDATE knowledge_chunks SET deleted_at = ? WHERE knowledge_item_id = ? AND owner_id = ? AND deleted_at IS NULL",
                (now, item_id, owner_id),
            )
            if cursor.rowcount:
                self._append_audit(conn, owner_id, "knowledge_item.deleted", "knowledge_item", item_id, {})
            return cursor.rowcount > 0

    def disconnect_source(self, owner_id: str, source: str) -> int:
        """Soft-delete every item of a source with its chunks and mark the connection disconnected."""
        now = _now()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE knowledge_chunks SET deleted_at = ?
                WHERE owner_id = ? AND deleted_at IS NULL AND knowledge_item_id IN (
                    SELECT id FROM knowledge_items WHERE owner_id = ? AND source = ?
                )
                """,
                (now, owner_id, owner_id, source),
            )
            cursor = conn.execute(
                "UPDATE knowledge_items SET deleted_at = ? WHERE owner_id = ? AND source = ? AND deleted_at IS NULL",
                (now, owner_id, source),
            )
            affected = cursor.rowcount
            conn.execute(
                "UPDATE connections SET status = 'disconnected', updated_at = ? WHERE owner_id = ? AND provider = ?",
                (now, owner_id, source),
            )
            self._append_audit(conn, owner_id, "connection.disconnected", "connection", source,
                               {"items_deleted": affected})
        return affected

    # === Chunks ===

    def upsert_chunks(self, chunks: Iterable[KnowledgeChunk]) -> int:
        """Upsert chunks by (item, index) and retire indices past the new set."""
        chunks = list(chunks)
        if not chunks:
            return 0
        now = _now()
        highest: dict[tuple[str, str], int] = {}
        with self._connect() as conn:
            for chunk in chunks:
                conn.execute(
                    """
                    INSERT INTO knowledge_chunks (
                        id, knowledge_item_id, owner_id, chunk_index, text, token_count,
                        embedding, metadata, content_hash
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(knowledge_item_id, chunk_index) DO UPDATE SET
                        text = excluded.text,
                        token_count = excluded.token_count,
                        embedding = excluded.embedding,
                        metadata = excluded.metadata,
                        content_hash = excluded.content_hash,
                        deleted_at = NULL
                    """,
                    (
                        chunk.id, chunk.knowledge_item_id, chunk.owner_id, chunk.chunk_index,
                        chunk.text, chunk.token_count, _to_json(list(chunk.embedding)),
                        _to_json(chunk.metadata), chunk.content_hash,
                    ),
                )
                key = (chunk.owner_id, chunk.knowledge_item_id)
                highest[key] = max(highest.get(key, -1), chunk.chunk_index)

            for (owner_id, item_id), max_index in highest.items():
                conn.execute(
                    """
                    UPDATE knowledge_chunks SET deleted_at = ?
                    WHERE knowledge_item_id = ? AND owner_id = ? AND chunk_index > ? AND deleted_at IS NULL
                    """,
                    (now, item_id, owner_id, max_index),
                )
        return len(chunks)

    def retire_chunks(self, owner_id: str, item_id: str, from_index: int = 0) -> int:
        """Soft-delete an item's live chunks from ``from_index`` onwards."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE knowledge_chunks SET deleted_at = ?
                WHERE knowledge_item_id = ? AND owner_id = ? AND chunk_index >= ? AND deleted_at IS NULL
                """,
                (_now(), item_id, owner_id, from_index),
            )
            return cursor.rowcount

    def list_chunks(self, owner_id: str, item_id: str, include_deleted: bool = False) -> list[KnowledgeChunk]:
        sql = "SELECT * FROM knowledge_chunks WHERE owner_id = ? AND knowledge_item_id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        sql += " ORDER BY chunk_index"
        with self._connect() as conn:
            rows = conn.execute(sql, (owner_id, item_id)).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def list_live_chunks(
        self,
        owner_id: str,
        filters: dict[str, Any] | None = None,
    ) -> list[tuple[RetrievedChunk, list[float]]]:
        """Every live chunk of an owner (item also live) with its embedding."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT kc.id AS chunk_id, kc.knowledge_item_id, kc.text, kc.metadata,
                       kc.embedding, ki.source, ki.title, ki.url
                FROM knowledge_chunks kc
                JOIN knowledge_items ki ON ki.id = kc.knowledge_item_id
                WHERE kc.owner_id = ? AND kc.deleted_at IS NULL AND ki.deleted_at IS NULL
                ORDER BY kc.id
                """,
                (owner_id,),
            ).fetchall()

        results = []
        for row in rows:
            metadata = _from_json(row["metadata"], {})
            if not matches_filters(metadata, filters):
                continue
            results.append((self._row_to_retrieved(row, metadata), _from_json(row["embedding"], [])))
        return results

    def get_live_chunks(self, owner_id: str, chunk_ids: list[str]) -> dict[str, RetrievedChunk]:
        """Look up live chunks by id; missing or deleted ids are simply absent."""
        if not chunk_ids:
            return {}
        placeholders = ",".join("?" for _ in chunk_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT kc.id AS chunk_id, kc.knowledge_item_id, kc.text, kc.metadata,
                       ki.source, ki.title, ki.url
                FROM knowledge_chunks kc
                JOIN knowledge_items ki ON ki.id = kc.knowledge_item_id
                WHERE kc.owner_id = ? AND kc.id IN ({placeholders})
                  AND kc.deleted_at IS NULL AND ki.deleted_at IS NULL
                """,
                [owner_id, *chunk_ids],
            ).fetchall()
        return {
            row["chunk_id"]: self._row_to_retrieved(row, _from_json(row["metadata"], {}))
            for row in rows
        }

    def count_chunks(self, owner_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM knowledge_chunks WHERE owner_id = ? AND deleted_at IS NULL",
                (owner_id,),
            ).fetchone()[0]

    # === Memories ===

    def upsert_memory(
        self,
        owner_id: str,
        type: str,
        content: str,
        confidence: float,
        source_refs: dict[str, Any] | None = None,
        memory_id: str | None = None,
        pinned: bool | None = None,
        embedding: list[float] | None = None,
    ) -> tuple[MemoryRecord, bool]:
        """Update ``memory_id`` if it exists for this owner, otherwise insert.

        Returns the stored record and whether it was newly created.
        """
        confidence = clamp_confidence(confidence)
        now = _now()
        emb_json = _to_json(list(embedding)) if embedding is not None else None
        with self._connect() as conn:
            if memory_id:
                rows = conn.execute(
                    """
                    UPDATE memories SET
                        type = ?, content = ?, confidence = ?, source_refs = ?,
                        pinned = COALESCE(?, pinned),
                        embedding = COALESCE(?, embedding),
                        updated_at = ?, deleted_at = NULL
                    WHERE id = ? AND owner_id = ?
                    RETURNING *
                    """,
                    (
                        type, content, confidence, _to_json(source_refs or {}),
                        None if pinned is None else int(pinned), emb_json, now,
                        memory_id, owner_id,
                    ),
                ).fetchall()
                if rows:
                    return self._row_to_memory(rows[0]), False

            rows = conn.execute(
                """
                INSERT INTO memories (
                    id, owner_id, type, content, confidence, source_refs, pinned,
                    embedding, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    uuid.uuid4().hex, owner_id, type, content, confidence,
                    _to_json(source_refs or {}), int(bool(pinned)), emb_json, now, now,
                ),
            ).fetchall()
        return self._row_to_memory(rows[0]), True

    def list_memories(self, owner_id: str) -> list[MemoryRecord]:
        """Live memories, pinned first then most recently updated."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM memories
                WHERE owner_id = ? AND deleted_at IS NULL
                ORDER BY pinned DESC, updated_at DESC, id
                """,
                (owner_id,),
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def get_memories(self, owner_id: str, memory_ids: list[str]) -> dict[str, MemoryRecord]:
        if not memory_ids:
            return {}
        placeholders = ",".join("?" for _ in memory_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM memories WHERE owner_id = ? AND deleted_at IS NULL AND id IN ({placeholders})",
                [owner_id, *memory_ids],
            ).fetchall()
        return {row["id"]: self._row_to_memory(row) for row in rows}

    def search_memories_text(self, owner_id: str, query: str, k: int) -> list[RetrievedMemory]:
        """Case-insensitive substring match, pinned first then most recently updated."""
        needle = query.lower()
        results = []
        for memory in self.list_memories(owner_id):
            if needle in memory.content.lower():
                results.append(RetrievedMemory(
                    id=memory.id,
                    type=memory.type,
                    content=memory.content,
                    confidence=memory.confidence,
                    pinned=memory.pinned,
                ))
            if len(results) >= k:
                break
        return results

    def list_memory_embeddings(self, owner_id: str) -> list[tuple[MemoryRecord, list[float]]]:
        """Live memories that carry an embedding."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM memories
                WHERE owner_id = ? AND deleted_at IS NULL AND embedding IS NOT NULL
                ORDER BY id
                """,
                (owner_id,),
            ).fetchall()
        return [(self._row_to_memory(r), _from_json(r["embedding"], [])) for r in rows]

    def set_memory_pinned(self, owner_id: str, memory_id: str, pinned: bool) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE memories SET pinned = ?, updated_at = ? WHERE id = ? AND owner_id = ? AND deleted_at IS NULL",
                (int(pinned), _now(), memory_id, owner_id),
            )
            return cursor.rowcount > 0

    def delete_memory(self, owner_id: str, memory_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE memories SET deleted_at = ? WHERE id = ? AND owner_id = ? AND deleted_at IS NULL",
                (_now(), memory_id, owner_id),
            )
            if cursor.rowcount:
                self._append_audit(conn, owner_id, "memory.deleted", "memory", memory_id, {})
            return cursor.rowcount > 0

    # === Conversations ===

    def create_conversation(self, owner_id: str, title: str | None = None) -> str:
        conversation_id = uuid.uuid4().hex
        now = _now()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO conversations (id, owner_id, title, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (conversation_id, owner_id, title, now, now),
            )
        return conversation_id

    def get_conversation(self, owner_id: str, conversation_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ? AND owner_id = ?",
                (conversation_id, owner_id),
            ).fetchone()
        return dict(row) if row else None

    def save_message(self, conversation_id: str, role: str, content: str) -> Message:
        message = Message(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=datetime.now(timezone.utc),
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO messages (id, conversation_id, role, content, created_at) VALUES (?, ?, ?, ?, ?)",
                (message.id, conversation_id, role, content, message.created_at.isoformat()),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (message.created_at.isoformat(), conversation_id),
            )
        return message

    def get_conversation_messages(self, conversation_id: str, limit: int = 20) -> list[Message]:
        """The most recent ``limit`` messages, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages WHERE conversation_id = ?
                ORDER BY seq DESC LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [
            Message(
                id=r["id"],
                conversation_id=r["conversation_id"],
                role=r["role"],
                content=r["content"],
                created_at=_parse_dt(r["created_at"]),
            )
            for r in reversed(rows)
        ]

    def count_messages(self, conversation_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()[0]

    # === Tasks ===

    def create_task(self, owner_id: str, title: str, notes: str | None = None) -> TaskRecord:
        task = TaskRecord(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            title=title,
            notes=notes,
            created_at=datetime.now(timezone.utc),
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO tasks (id, owner_id, title, notes, created_at) VALUES (?, ?, ?, ?, ?)",
                (task.id, owner_id, title, notes, task.created_at.isoformat()),
            )
            self._append_audit(conn, owner_id, "task.created", "task", task.id, {"title": title})
        return task

    def list_tasks(self, owner_id: str) -> list[TaskRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE owner_id = ? ORDER BY created_at DESC, id", (owner_id,)
            ).fetchall()
        return [
            TaskRecord(
                id=r["id"], owner_id=r["owner_id"], title=r["title"], notes=r["notes"],
                created_at=_parse_dt(r["created_at"]),
            )
            for r in rows
        ]

    # === Connections ===

    def upsert_connection(
        self,
        owner_id: str,
        provider: str,
        status: str = "connected",
        metadata: dict[str, Any] | None = None,
    ) -> ConnectionRecord:
        now = _now()
        with self._connect() as conn:
            rows = conn.execute(
                """
                INSERT INTO connections (id, owner_id, provider, status, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, provider) DO UPDATE SET
                    status = excluded.status,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                RETURNING *
                """,
                (uuid.uuid4().hex, owner_id, provider, status, _to_json(metadata or {}), now, now),
            ).fetchall()
        return self._row_to_connection(rows[0])

    def get_connection(self, connection_id: str) -> ConnectionRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM connections WHERE id = ?", (connection_id,)).fetchone()
        return self._row_to_connection(row) if row else None

    def list_connections(self, owner_id: str) -> list[ConnectionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM connections WHERE owner_id = ? ORDER BY provider", (owner_id,)
            ).fetchall()
        return [self._row_to_connection(r) for r in rows]

    def update_connection_sync_state(
        self,
        connection_id: str,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        now = _now()
        with self._connect() as conn:
            if status == "connected":
                conn.execute(
                    """
                    UPDATE connections
                    SET status = ?, metadata = COALESCE(?, metadata), last_synced_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (status, _to_json(metadata), now, now, connection_id),
                )
            else:
                conn.execute(
                    "UPDATE connections SET status = ?, metadata = COALESCE(?, metadata), updated_at = ? WHERE id = ?",
                    (status, _to_json(metadata), now, connection_id),
                )

    # === Audit ===

    def _append_audit(
        self,
        conn: sqlite3.Connection,
        owner_id: str,
        action: str,
        object_type: str,
        object_id: str,
        details: dict[str, Any],
    ) -> None:
        conn.execute(
            """
            INSERT INTO audit_logs (owner_id, action, object_type, object_id, timestamp, details)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (owner_id, action, object_type, object_id, _now(), _to_json(details)),
        )

    def append_audit_log(
        self,
        owner_id: str,
        action: str,
        object_type: str,
        object_id: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        with self._connect() as conn:
            self._append_audit(conn, owner_id, action, object_type, object_id, details or {})

    def list_audit_logs(self, owner_id: str, limit: int = 100) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_logs WHERE owner_id = ? ORDER BY seq DESC LIMIT ?",
                (owner_id, limit),
            ).fetchall()
        return [{**dict(r), "details": _from_json(r["details"], {})} for r in rows]

    # === Stats ===

    def basic_stats(self, owner_id: str) -> dict[str, Any]:
        with self._connect() as conn:
            items = conn.execute(
                """
                SELECT source, COUNT(*) AS n FROM knowledge_items
                WHERE owner_id = ? AND deleted_at IS NULL GROUP BY source ORDER BY source
                """,
                (owner_id,),
            ).fetchall()
            memories = conn.execute(
                "SELECT COUNT(*) FROM memories WHERE owner_id = ? AND deleted_at IS NULL", (owner_id,)
            ).fetchone()[0]
            conversations = conn.execute(
                "SELECT COUNT(*) FROM conversations WHERE owner_id = ?", (owner_id,)
            ).fetchone()[0]
        return {
            "items_by_source": {r["source"]: r["n"] for r in items},
            "items": sum(r["n"] for r in items),
            "chunks": self.count_chunks(owner_id),
            "memories": memories,
            "conversations": conversations,
        }

    # === Row mapping ===

    def _row_to_item(self, row: sqlite3.Row) -> KnowledgeItem:
        return KnowledgeItem(
            id=row["id"],
            owner_id=row["owner_id"],
            source=row["source"],
            source_id=row["source_id"],
            content_hash=row["content_hash"],
            title=row["title"],
            url=row["url"],
            author=row["author"],
            raw_text=row["raw_text"],
            raw_json=_from_json(row["raw_json"]),
            metadata=_from_json(row["metadata"], {}),
            created_at=_parse_dt(row["created_at"]),
            fetched_at=_parse_dt(row["fetched_at"]),
            deleted_at=_parse_dt(row["deleted_at"]),
        )

    def _row_to_chunk(self, row: sqlite3.Row) -> KnowledgeChunk:
        return KnowledgeChunk(
            id=row["id"],
            knowledge_item_id=row["knowledge_item_id"],
            owner_id=row["owner_id"],
            chunk_index=row["chunk_index"],
            text=row["text"],
            token_count=row["token_count"],
            embedding=_from_json(row["embedding"], []),
            content_hash=row["content_hash"],
            metadata=_from_json(row["metadata"], {}),
            deleted_at=_parse_dt(row["deleted_at"]),
        )

    def _row_to_retrieved(self, row: sqlite3.Row, metadata: dict[str, Any], score: float = 0.0) -> RetrievedChunk:
        return RetrievedChunk(
            chunk_id=row["chunk_id"],
            knowledge_item_id=row["knowledge_item_id"],
            score=score,
            text=row["text"],
            source=row["source"],
            title=row["title"],
            url=row["url"],
            metadata=metadata,
        )

    def _row_to_memory(self, row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            type=row["type"],
            content=row["content"],
            confidence=float(row["confidence"]),
            source_refs=_from_json(row["source_refs"], {}),
            pinned=bool(row["pinned"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            deleted_at=_parse_dt(row["deleted_at"]),
        )

    def _row_to_connection(self, row: sqlite3.Row) -> ConnectionRecord:
        return ConnectionRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            provider=row["provider"],
            status=row["status"],
            metadata=_from_json(row["metadata"], {}),
            last_synced_at=_parse_dt(row["last_synced_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )
