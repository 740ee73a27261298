"""Background jobs: file and connector ingestion, memory reflection.

Jobs travel over an at-least-once channel, so every handler must tolerate
being run twice for the same payload.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .connectors.base import ConnectorRegistry
from .ingest.processor import IngestionService, IngestResult, SyncReport
from .memory.reflection import ReflectionDeps, ReflectionResult, reflect
from .storage.knowledge import KnowledgeStore

logger = logging.getLogger(__name__)


def _pick(payload: dict[str, Any], *keys: str, required: bool = True) -> Any:
    for key in keys:
        if payload.get(key) not in (None, ""):
            return payload[key]
    if required:
        raise ValueError(f"Job payload missing {keys[0]}")
    return None


@dataclass
class FileIngestionJob:
    owner_id: str
    item_id: str
    object_key: str
    file_name: str
    mime_type: str = ""
    kind: str = "file"


@dataclass
class ConnectorIngestionJob:
    owner_id: str
    provider: str
    connection_id: str
    kind: str = "connector"


@dataclass
class ReflectionJob:
    owner_id: str
    conversation_id: str
    message_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ReflectionJob":
        return cls(
            owner_id=_pick(payload, "owner_id", "owner", "userId"),
            conversation_id=_pick(payload, "conversation_id", "conversationId"),
            message_ids=list(_pick(payload, "message_ids", "messageIds", required=False) or []),
        )


IngestionJob = FileIngestionJob | ConnectorIngestionJob


def ingestion_job_from_payload(payload: dict[str, Any]) -> IngestionJob:
    """Validate a raw ingestion payload into its typed variant."""
    kind = payload.get("kind")
    owner_id = _pick(payload, "owner_id", "owner", "userId")
    if kind == "file":
        return FileIngestionJob(
            owner_id=owner_id,
            item_id=_pick(payload, "item_id", "itemId"),
            object_key=_pick(payload, "object_key", "objectKey"),
            file_name=_pick(payload, "file_name", "fileName"),
            mime_type=_pick(payload, "mime_type", "mimeType", required=False) or "",
        )
    if kind == "connector":
        return ConnectorIngestionJob(
            owner_id=owner_id,
            provider=_pick(payload, "provider"),
            connection_id=_pick(payload, "connection_id", "connectionId"),
        )
    raise ValueError(f"Unknown ingestion job kind: {kind!r}")


class JobHandlers:
    """Executes each job type against the engine's services."""

    def __init__(
        self,
        ingestion: IngestionService,
        connectors: ConnectorRegistry,
        reflection_deps: ReflectionDeps,
        knowledge: KnowledgeStore,
        message_limit: int = 40,
        merge_threshold: float = 0.93,
    ):
        self.ingestion = ingestion
        self.connectors = connectors
        self.reflection_deps = reflection_deps
        self.knowledge = knowledge
        self.message_limit = message_limit
        self.merge_threshold = merge_threshold

    async def handle_ingestion(self, job: IngestionJob) -> IngestResult | SyncReport:
        if isinstance(job, FileIngestionJob):
            return await self.ingestion.ingest_file(
                job.owner_id, job.item_id, job.object_key, job.file_name, job.mime_type
            )
        connector = self.connectors.get(job.provider)
        return await self.ingestion.sync_connection(job.owner_id, job.connection_id, connector)

    async def handle_reflection(self, job: ReflectionJob) -> ReflectionResult:
        # message_ids are informational; reflect re-reads the live window
        allow_learning = await asyncio.to_thread(self.knowledge.get_learning_consent, job.owner_id)
        return await reflect(
            self.reflection_deps,
            job.owner_id,
            job.conversation_id,
            allow_learning,
            message_limit=self.message_limit,
            merge_threshold=self.merge_threshold,
        )

    async def handle(self, job: Any) -> Any:
        if isinstance(job, ReflectionJob):
            return await self.handle_reflection(job)
        if isinstance(job, (FileIngestionJob, ConnectorIngestionJob)):
            return await self.handle_ingestion(job)
        raise ValueError(f"Unsupported job type: {type(job).__name__}")


class Worker:
    """Consumes jobs from an asyncio queue. A failing job never stops the loop."""

    def __init__(self, handlers: JobHandlers, queue: asyncio.Queue | None = None):
        self.handlers = handlers
        self.queue: asyncio.Queue = queue or asyncio.Queue()
        self.completed = 0
        self.failed = 0

    async def dispatch(self, job: Any) -> None:
        await self.queue.put(job)
        logger.debug(f"Queued {type(job).__name__}")

    async def process(self, job: Any) -> Any:
        name = type(job).__name__
        try:
            result = await self.handlers.handle(job)
        except Exception as e:
            self.failed += 1
            logger.error(f"{name} failed: {e}")
            return None
        self.completed += 1
        logger.info(f"{name} completed: {result}")
        return result

    async def drain(self) -> int:
        """Process everything currently queued and return how many jobs ran."""
        processed = 0
        while not self.queue.empty():
            job = self.queue.get_nowait()
            try:
                await self.process(job)
            finally:
                self.queue.task_done()
            processed += 1
        return processed

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Process jobs until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            try:
                job = await asyncio.wait_for(self.queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            try:
                await self.process(job)
            finally:
                self.queue.task_done()
