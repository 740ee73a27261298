"""RAG-based answers over the owner's knowledge, memories and conversation."""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from .embeddings.embedder import EmbedderBase
from .llm.base import LlmBase
from .llm.prompts import LEARNING_DISABLED, LEARNING_ENABLED, RAG_PROMPT, TEMPERATURE_ANSWER
from .models import ChatResponse, Citation, Message, RetrievedChunk, RetrievedMemory
from .query.untrusted import detect_suspicious_patterns, wrap_untrusted_content
from .storage.base import VectorStoreBase
from .storage.knowledge import KnowledgeStore

logger = logging.getLogger(__name__)


class AnswerStreamError(RuntimeError):
    """The streamed answer ended with an error event."""


@dataclass
class StreamEvent:
    type: str  # "token", "done" or "error"
    token: str | None = None
    response: ChatResponse | None = None
    error: str | None = None


@dataclass
class RetrievalContext:
    chunks: list[RetrievedChunk]
    memories: list[RetrievedMemory]
    history: list[Message]


def format_knowledge(chunks: list[RetrievedChunk]) -> str:
    blocks = []
    for i, chunk in enumerate(chunks, 1):
        wrapped = wrap_untrusted_content(
            chunk.text,
            source=chunk.source,
            title=chunk.title,
            url=chunk.url,
            include_warning=False,
        )
        blocks.append(f"[Doc {i}]\n{wrapped}")
    return "\n\n".join(blocks)


def format_memories(memories: list[RetrievedMemory]) -> str:
    return "\n".join(f"[Memory {i}] ({m.type}) {m.content}" for i, m in enumerate(memories, 1))


def format_history(messages: list[Message]) -> str:
    return "\n".join(f"{m.role.upper()}: {m.content}" for m in messages)


def build_citations(chunks: list[RetrievedChunk]) -> list[Citation]:
    """One citation per chunk, labelled in prompt order."""
    return [
        Citation(label=f"Doc {i}", source=chunk.source, title=chunk.title, url=chunk.url)
        for i, chunk in enumerate(chunks, 1)
    ]


def build_prompt(query: str, context: RetrievalContext, memory_learning_enabled: bool) -> str:
    return RAG_PROMPT.format(
        learning=LEARNING_ENABLED if memory_learning_enabled else LEARNING_DISABLED,
        query=query,
        memories=format_memories(context.memories) or "None.",
        knowledge=format_knowledge(context.chunks) or "None.",
        conversation=format_history(context.history) or "No previous messages.",
    )


class RagAssembler:
    """Retrieves context, builds a guarded prompt and answers with citations."""

    def __init__(
        self,
        llm: LlmBase,
        embedder: EmbedderBase,
        vector_store: VectorStoreBase,
        knowledge: KnowledgeStore,
        chunk_k: int = 6,
        memory_k: int = 4,
        history_limit: int = 20,
    ):
        self.llm = llm
        self.embedder = embedder
        self.vector_store = vector_store
        self.knowledge = knowledge
        self.chunk_k = chunk_k
        self.memory_k = memory_k
        self.history_limit = history_limit

    async def retrieve(self, owner_id: str, conversation_id: str, query: str) -> RetrievalContext:
        """Embed the query once and fetch chunks, memories and history concurrently."""
        embedding = await self.embedder.embed_query(query)
        chunks, memories, history = await asyncio.gather(
            asyncio.to_thread(self.vector_store.similarity_search, owner_id, embedding, self.chunk_k),
            asyncio.to_thread(self.vector_store.memory_search, owner_id, query, embedding, self.memory_k),
            asyncio.to_thread(self.knowledge.get_conversation_messages, conversation_id, self.history_limit),
        )
        for chunk in chunks:
            hits = detect_suspicious_patterns(chunk.text)
            if hits:
                logger.warning(
                    f"Suspicious content in chunk {chunk.chunk_id} "
                    f"({chunk.source}: {chunk.title or 'Untitled'}): {', '.join(hits)}"
                )
        return RetrievalContext(chunks=chunks, memories=memories, history=history)

    async def answer(
        self,
        owner_id: str,
        conversation_id: str,
        query: str,
        memory_learning_enabled: bool,
    ) -> ChatResponse:
        """Batch answer; the reply is saved as an assistant message."""
        context = await self.retrieve(owner_id, conversation_id, query)
        prompt = build_prompt(query, context, memory_learning_enabled)
        answer = await self.llm.complete(prompt, temperature=TEMPERATURE_ANSWER)
        await asyncio.to_thread(self.knowledge.save_message, conversation_id, "assistant", answer)
        return ChatResponse(answer=answer, citations=build_citations(context.chunks))

    async def stream(
        self,
        owner_id: str,
        conversation_id: str,
        query: str,
        memory_learning_enabled: bool,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield token events, then a single done event carrying the response.

        Failures become one error event. If ``cancel_event`` is set, or the
        consumer stops iterating, no further tokens are produced and the
        partial answer is not saved.
        """
        tokens = None
        parts: list[str] = []
        try:
            context = await self.retrieve(owner_id, conversation_id, query)
            prompt = build_prompt(query, context, memory_learning_enabled)
            tokens = self.llm.stream(prompt, temperature=TEMPERATURE_ANSWER)
            async for token in tokens:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(f"Answer stream for {conversation_id} cancelled")
                    return
                parts.append(token)
                yield StreamEvent(type="token", token=token)
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Answer stream for {conversation_id} cancelled")
                return

            answer = "".join(parts)
            await asyncio.to_thread(self.knowledge.save_message, conversation_id, "assistant", answer)
            yield StreamEvent(
                type="done",
                response=ChatResponse(answer=answer, citations=build_citations(context.chunks)),
            )
        except Exception as e:
            logger.error(f"Answer stream for {conversation_id} failed: {e}")
            yield StreamEvent(type="error", error=str(e))
        finally:
            if tokens is not None and hasattr(tokens, "aclose"):
                await tokens.aclose()

    async def stream_answer(
        self,
        owner_id: str,
        conversation_id: str,
        query: str,
        memory_learning_enabled: bool,
        on_token: Callable[[str], None],
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse | None:
        """Callback form of ``stream``. Returns None if the stream was cancelled."""
        async for event in self.stream(owner_id, conversation_id, query, memory_learning_enabled, cancel_event):
            if event.type == "token":
                on_token(event.token)
            elif event.type == "done":
                return event.response
            elif event.type == "error":
                raise AnswerStreamError(event.error)
        return None
