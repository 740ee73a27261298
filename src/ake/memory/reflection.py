"""Memory reflection: distil durable memories from recent conversation turns."""

import asyncio
import logging
from dataclasses import dataclass

from ..embeddings.embedder import EmbedderBase
from ..llm.base import LlmBase
from ..storage.base import VectorStoreBase
from ..storage.knowledge import KnowledgeStore, clamp_confidence

logger = logging.getLogger(__name__)

DEFAULT_MERGE_THRESHOLD = 0.93


@dataclass
class ReflectionDeps:
    llm: LlmBase
    embedder: EmbedderBase
    vector_store: VectorStoreBase
    knowledge: KnowledgeStore


@dataclass
class ReflectionResult:
    created: int = 0
    updated: int = 0


def should_reflect(message_count: int, every: int = 10) -> bool:
    """Reflection cadence: every ``every`` messages in a conversation."""
    return every > 0 and message_count > 0 and message_count % every == 0


def format_transcript(messages) -> str:
    return "\n".join(f"{m.role.upper()}: {m.content}" for m in messages)


async def reflect(
    deps: ReflectionDeps,
    owner_id: str,
    conversation_id: str,
    allow_learning: bool,
    message_limit: int = 40,
    merge_threshold: float = DEFAULT_MERGE_THRESHOLD,
) -> ReflectionResult:
    """Extract, merge and persist memories from the latest conversation window.

    Without learning consent this returns zero counts before touching any
    collaborator. A candidate whose nearest existing memory scores above
    ``merge_threshold`` updates that memory instead of creating a new one.
    """
    if not allow_learning:
        logger.info(f"Memory reflection skipped for {owner_id}: learning disabled")
        return ReflectionResult()

    messages = await asyncio.to_thread(
        deps.knowledge.get_conversation_messages, conversation_id, message_limit
    )
    if not messages:
        return ReflectionResult()

    existing = await asyncio.to_thread(deps.knowledge.list_memories, owner_id)
    candidates = await deps.llm.extract_memories(format_transcript(messages), existing)

    result = ReflectionResult()
    for candidate in candidates:
        content = candidate.content.strip()
        if not content:
            continue
        embedding = (await deps.embedder.embed([content]))[0]

        memory_id = candidate.should_update_id
        if not memory_id:
            nearest = await asyncio.to_thread(
                deps.vector_store.memory_search, owner_id, content, embedding, 1
            )
            if nearest and nearest[0].score is not None and nearest[0].score > merge_threshold:
                memory_id = nearest[0].id
                logger.debug(f"Merging into memory {memory_id} (score {nearest[0].score:.3f})")

        record, created = await asyncio.to_thread(
            deps.knowledge.upsert_memory,
            owner_id,
            candidate.type,
            content,
            clamp_confidence(candidate.confidence),
            {"source": "conversation", "conversation_id": conversation_id},
            memory_id,
            None,
            embedding,
        )
        await asyncio.to_thread(deps.vector_store.index_memory, record, embedding)
        if created:
            result.created += 1
        else:
            result.updated += 1

    await asyncio.to_thread(
        deps.knowledge.save_message,
        conversation_id,
        "system",
        f"[Reflection] stored memories: created={result.created}, updated={result.updated}",
    )
    logger.info(f"Reflection for {owner_id}: created={result.created}, updated={result.updated}")
    return result
