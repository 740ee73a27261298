"""Chat orchestration: one user turn through RAG or the agent, then reflection."""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable

from .agent.planner import run_agent
from .agent.tools import AgentDeps
from .memory.reflection import should_reflect
from .models import AgentResult, ChatResponse
from .qa import RagAssembler, StreamEvent
from .storage.knowledge import KnowledgeStore
from .workers import ReflectionJob

logger = logging.getLogger(__name__)

# Window of message ids attached to a reflection job
REFLECTION_WINDOW = 100


@dataclass
class ChatTurn:
    conversation_id: str
    response: ChatResponse | None = None
    agent: AgentResult | None = None
    reflection_queued: bool = False


class ChatService:
    """Runs chat turns and queues memory reflection on cadence.

    The message count is read after the reply is saved, so two concurrent
    turns may both see a multiple of ``reflect_every`` or both miss it.
    Reflection is idempotent enough that either outcome is acceptable.
    """

    def __init__(
        self,
        knowledge: KnowledgeStore,
        rag: RagAssembler,
        agent_deps: AgentDeps,
        dispatch: Callable[[ReflectionJob], Awaitable[None]],
        reflect_every: int = 10,
    ):
        self.knowledge = knowledge
        self.rag = rag
        self.agent_deps = agent_deps
        self.dispatch = dispatch
        self.reflect_every = reflect_every

    async def begin(self, owner_id: str, query: str, conversation_id: str | None = None) -> str:
        """Resolve or create the conversation and record the user's message."""
        if conversation_id:
            conversation = await asyncio.to_thread(self.knowledge.get_conversation, owner_id, conversation_id)
            if conversation is None:
                raise ValueError(f"Conversation not found: {conversation_id}")
        else:
            conversation_id = await asyncio.to_thread(self.knowledge.create_conversation, owner_id, query[:80])
        await asyncio.to_thread(self.knowledge.save_message, conversation_id, "user", query)
        return conversation_id

    async def _learning_enabled(self, owner_id: str, allow_learning: bool | None) -> bool:
        if allow_learning is not None:
            return allow_learning
        return await asyncio.to_thread(self.knowledge.get_learning_consent, owner_id)

    async def queue_reflection_if_needed(self, owner_id: str, conversation_id: str) -> bool:
        count = await asyncio.to_thread(self.knowledge.count_messages, conversation_id)
        if not should_reflect(count, self.reflect_every):
            return False
        window = await asyncio.to_thread(
            self.knowledge.get_conversation_messages, conversation_id, REFLECTION_WINDOW
        )
        await self.dispatch(
            ReflectionJob(
                owner_id=owner_id,
                conversation_id=conversation_id,
                message_ids=[m.id for m in window],
            )
        )
        logger.info(f"Queued reflection for conversation {conversation_id} at {count} messages")
        return True

    async def send(
        self,
        owner_id: str,
        query: str,
        conversation_id: str | None = None,
        agent_mode: bool = False,
        confirmed_actions: list[str] | None = None,
        allow_learning: bool | None = None,
    ) -> ChatTurn:
        conversation_id = await self.begin(owner_id, query, conversation_id)
        turn = ChatTurn(conversation_id=conversation_id)

        if agent_mode:
            turn.agent = await run_agent(self.agent_deps, owner_id, query, confirmed_actions)
            await asyncio.to_thread(
                self.knowledge.save_message, conversation_id, "assistant", turn.agent.response
            )
        else:
            learning = await self._learning_enabled(owner_id, allow_learning)
            turn.response = await self.rag.answer(owner_id, conversation_id, query, learning)

        turn.reflection_queued = await self.queue_reflection_if_needed(owner_id, conversation_id)
        return turn

    async def stream(
        self,
        owner_id: str,
        conversation_id: str,
        query: str,
        allow_learning: bool | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a RAG answer for a conversation opened with ``begin``."""
        learning = await self._learning_enabled(owner_id, allow_learning)
        async for event in self.rag.stream(owner_id, conversation_id, query, learning, cancel_event):
            if event.type == "done":
                await self.queue_reflection_if_needed(owner_id, conversation_id)
            yield event
