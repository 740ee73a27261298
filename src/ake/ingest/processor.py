"""Ingestion service - turns files and connector documents into searchable chunks."""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..config import section
from ..connectors.base import ConnectorBase
from ..embeddings.embedder import EmbedderBase
from ..models import Chunk, IngestedDocument, KnowledgeChunk
from ..retry import RetryPolicy
from ..storage.base import VectorStoreBase
from ..storage.knowledge import KnowledgeStore, chunk_id_for
from ..storage.objects import LocalObjectStorage
from .chunker import chunk_text
from .parsers import get_parser

logger = logging.getLogger(__name__)


def compute_hash(content: str) -> str:
    """SHA256 hash of content for dedup."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass
class IngestResult:
    item_id: str
    changed: bool
    chunks: int = 0


@dataclass
class SyncReport:
    connection_id: str
    inserted: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    status: str = "pending"


class IngestionService:
    """Content-addressed ingestion.

    Every write goes through the KnowledgeStore's hash gate first, so a job
    delivered twice embeds its content once.
    """

    def __init__(
        self,
        knowledge: KnowledgeStore,
        vector_store: VectorStoreBase,
        embedder: EmbedderBase,
        storage: LocalObjectStorage,
        config: dict[str, Any],
        retry: RetryPolicy | None = None,
    ):
        self.knowledge = knowledge
        self.vector_store = vector_store
        self.embedder = embedder
        self.storage = storage
        self.retry = retry or RetryPolicy()
        self.file_chunking = section(config, "chunking", "file")
        self.document_chunking = section(config, "chunking", "document")

    async def _embed_and_store(self, owner_id: str, item_id: str, chunks: list[Chunk]) -> int:
        if not chunks:
            await asyncio.to_thread(self.knowledge.retire_chunks, owner_id, item_id)
            return 0
        embeddings = await self.embedder.embed([c.text for c in chunks])
        records = [
            KnowledgeChunk(
                id=chunk_id_for(item_id, index),
                knowledge_item_id=item_id,
                owner_id=owner_id,
                chunk_index=index,
                text=chunk.text,
                token_count=chunk.token_count,
                embedding=embedding,
                content_hash=chunk.content_hash,
                metadata=chunk.metadata,
            )
            for index, (chunk, embedding) in enumerate(zip(chunks, embeddings))
        ]
        await asyncio.to_thread(self.vector_store.upsert_chunks, records)
        return len(records)

    async def _store_or_reopen(self, owner_id: str, item_id: str, chunks: list[Chunk]) -> int:
        try:
            return await self._embed_and_store(owner_id, item_id, chunks)
        except Exception:
            # Leave the hash gate open so a redelivered job retries the embed
            await asyncio.to_thread(self.knowledge.invalidate_item_hash, owner_id, item_id)
            raise

    async def ingest_document(
        self,
        owner_id: str,
        source: str,
        source_id: str | None,
        raw_text: str,
        title: str | None = None,
        url: str | None = None,
        author: str | None = None,
        raw_json: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> IngestResult:
        """Ingest one normalized document. Unchanged content is a no-op."""
        metadata = metadata or {}
        content_hash = compute_hash(raw_text)
        upsert = await asyncio.to_thread(
            self.knowledge.upsert_item,
            owner_id, source, source_id, raw_text, raw_json, metadata, content_hash,
            title, url, author, created_at,
        )
        if not upsert.changed:
            logger.debug(f"Skipping unchanged {source}:{source_id}")
            return IngestResult(item_id=upsert.id, changed=False)

        chunks = chunk_text(raw_text, metadata={**metadata, "source": source}, **self.document_chunking)
        count = await self._store_or_reopen(owner_id, upsert.id, chunks)
        await asyncio.to_thread(
            self.knowledge.append_audit_log,
            owner_id, "source.ingested", "knowledge_item", upsert.id,
            {"source": source, "source_id": source_id, "chunk_count": count},
        )
        logger.info(f"Ingested {source}:{source_id} into {count} chunks")
        return IngestResult(item_id=upsert.id, changed=True, chunks=count)

    async def create_file_item(self, owner_id: str, file_name: str, object_key: str, mime_type: str) -> str:
        """Register a dropped file so a job can reference it by id."""
        return await asyncio.to_thread(
            self.knowledge.create_file_item, owner_id, object_key, file_name, mime_type
        )

    async def ingest_file(
        self,
        owner_id: str,
        item_id: str,
        object_key: str,
        file_name: str,
        mime_type: str = "",
    ) -> IngestResult:
        """Parse a stored file and index it. Re-running on the same bytes is a no-op."""
        item = await asyncio.to_thread(self.knowledge.get_item, owner_id, item_id, True)
        if item is None:
            raise ValueError(f"Knowledge item not found: {item_id}")

        stored = await asyncio.to_thread(self.storage.get_object, object_key)
        parser = get_parser(file_name, mime_type)
        parsed = parser.parse(stored.data.decode("utf-8", errors="replace"), file_name)
        text = parsed["content"]
        content_hash = compute_hash(text)
        if item.content_hash == content_hash:
            logger.debug(f"Skipping unchanged file {file_name}")
            return IngestResult(item_id=item_id, changed=False)

        metadata = {**item.metadata, "filename": file_name, "status": "indexed", "parser": parsed["metadata"]}
        changed = await asyncio.to_thread(
            self.knowledge.update_item_content, owner_id, item_id, text, metadata, content_hash
        )
        if not changed:
            logger.debug(f"Skipping unchanged file {file_name}")
            return IngestResult(item_id=item_id, changed=False)

        chunks = chunk_text(
            text,
            metadata={"filename": file_name, "source": "file_drop"},
            **self.file_chunking,
        )
        if not chunks:
            logger.info(f"No text extracted from {file_name}")
        count = await self._store_or_reopen(owner_id, item_id, chunks)
        await asyncio.to_thread(
            self.knowledge.append_audit_log,
            owner_id, "file.ingested", "knowledge_item", item_id,
            {"object_key": object_key, "chunk_count": count},
        )
        logger.info(f"Ingested {file_name} into {count} chunks")
        return IngestResult(item_id=item_id, changed=True, chunks=count)

    async def _ingest_connector_document(self, doc: IngestedDocument) -> IngestResult:
        return await self.ingest_document(
            owner_id=doc.owner_id,
            source=doc.source,
            source_id=doc.source_id or doc.item_id,
            raw_text=doc.raw_text or "",
            title=doc.title,
            url=doc.url,
            author=doc.author,
            raw_json=doc.raw_json,
            metadata=doc.metadata,
            created_at=doc.created_at,
        )

    async def sync_connection(self, owner_id: str, connection_id: str, connector: ConnectorBase) -> SyncReport:
        """Pull documents from a connector and ingest each one independently.

        A partial failure is reported in the counts and leaves the connection
        in ``error`` status so the whole sync can be retried.
        """
        connection = await asyncio.to_thread(self.knowledge.get_connection, connection_id)
        if connection is None or connection.owner_id != owner_id:
            raise ValueError(f"Connection not found: {connection_id}")

        await asyncio.to_thread(self.knowledge.update_connection_sync_state, connection_id, "pending")
        cursor = connection.metadata.get("cursor")
        try:
            result = await self.retry.run(lambda: connector.sync(owner_id, connection_id, cursor))
        except Exception as e:
            logger.error(f"Sync of {connector.provider} failed: {e}")
            await asyncio.to_thread(
                self.knowledge.update_connection_sync_state, connection_id, "error",
                {**connection.metadata, "last_error": str(e)},
            )
            raise

        report = SyncReport(
            connection_id=connection_id,
            skipped=result.skipped,
            failed=result.failed,
            errors=list(result.errors),
        )
        for doc in result.documents:
            if not doc.raw_text:
                report.skipped += 1
                continue
            if doc.owner_id != owner_id:
                report.failed += 1
                report.errors.append(f"{doc.item_id}: owner mismatch")
                continue
            try:
                ingested = await self._ingest_connector_document(doc)
            except Exception as e:
                logger.warning(f"Failed to ingest {doc.source}:{doc.source_id or doc.item_id}: {e}")
                report.failed += 1
                report.errors.append(f"{doc.source_id or doc.item_id}: {e}")
                continue
            if ingested.changed:
                report.inserted += 1
            else:
                report.skipped += 1

        report.status = "connected" if report.failed == 0 else "error"
        last_sync = {
            "inserted": report.inserted,
            "skipped": report.skipped,
            "failed": report.failed,
            "errors": report.errors[:20],
        }
        await asyncio.to_thread(
            self.knowledge.update_connection_sync_state, connection_id, report.status,
            {**connection.metadata, "last_sync": last_sync},
        )
        logger.info(
            f"Synced {connector.provider}: inserted={report.inserted} "
            f"skipped={report.skipped} failed={report.failed}"
        )
        return report
