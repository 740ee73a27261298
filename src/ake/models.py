"""Data models used throughout the engine."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


SOURCE_KINDS = ("file_drop", "github", "youtube", "x", "gmail", "calendar", "demo")
MEMORY_TYPES = ("fact", "preference", "project", "person")
MESSAGE_ROLES = ("system", "user", "assistant", "tool")
CONNECTION_STATUSES = ("connected", "disconnected", "error", "pending")


@dataclass
class Chunk:
    """A chunk of text produced by the chunker, not yet embedded."""
    text: str
    token_count: int
    content_hash: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class KnowledgeItem:
    """One logical source document owned by a single user."""
    id: str
    owner_id: str
    source: str  # e.g., "file_drop", "github", "youtube"
    source_id: str | None
    content_hash: str
    title: str | None = None
    url: str | None = None
    author: str | None = None
    raw_text: str | None = None
    raw_json: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    fetched_at: datetime | None = None
    deleted_at: datetime | None = None


@dataclass
class KnowledgeChunk:
    """One retrievable, embedded unit of a KnowledgeItem."""
    id: str
    knowledge_item_id: str
    owner_id: str
    chunk_index: int
    text: str
    token_count: int
    embedding: list[float]
    content_hash: str
    metadata: dict[str, Any] = field(default_factory=dict)
    deleted_at: datetime | None = None


@dataclass
class MemoryRecord:
    """A durable fact, preference, project or person note about the owner."""
    id: str
    owner_id: str
    type: str
    content: str
    confidence: float
    source_refs: dict[str, Any] = field(default_factory=dict)
    pinned: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


@dataclass
class MemoryCandidate:
    """A memory proposed by the extractor before dedup/merge."""
    type: str
    content: str
    confidence: float = 0.5
    should_update_id: str | None = None


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime | None = None


@dataclass
class RetrievedChunk:
    """Read-only projection of a chunk returned by similarity search."""
    chunk_id: str
    knowledge_item_id: str
    score: float
    text: str
    source: str
    title: str | None = None
    url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievedMemory:
    """Read-only projection of a memory returned by memory search."""
    id: str
    type: str
    content: str
    confidence: float
    pinned: bool = False
    score: float | None = None


@dataclass
class Citation:
    label: str
    source: str
    title: str | None = None
    url: str | None = None


@dataclass
class ChatResponse:
    answer: str
    citations: list[Citation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ToolCallResult:
    tool_name: str
    input: dict[str, Any]
    output: dict[str, Any] | str


@dataclass
class AgentResult:
    response: str
    tool_results: list[ToolCallResult] = field(default_factory=list)
    proposed_actions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IngestedDocument:
    """A normalized document handed over by a connector."""
    item_id: str
    owner_id: str
    source: str
    source_id: str | None = None
    url: str | None = None
    title: str | None = None
    author: str | None = None
    created_at: datetime | None = None
    raw_text: str | None = None
    raw_json: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectorSyncResult:
    inserted: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    documents: list[IngestedDocument] = field(default_factory=list)


@dataclass
class TaskRecord:
    id: str
    owner_id: str
    title: str
    notes: str | None = None
    created_at: datetime | None = None


@dataclass
class ConnectionRecord:
    id: str
    owner_id: str
    provider: str
    status: str
    metadata: dict[str, Any] = field(default_factory=dict)
    last_synced_at: datetime | None = None
    updated_at: datetime | None = None
