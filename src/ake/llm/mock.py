"""Offline model used when no provider credentials are configured."""

from typing import AsyncIterator

from ..models import MemoryCandidate, MemoryRecord
from .base import LlmBase


class MockLlm(LlmBase):
    """Echoes a prefix of the prompt. Never extracts memories."""

    model_name = "mock-llm"

    async def complete(self, prompt: str, temperature: float = 0.2) -> str:
        return f"Mock response generated for: {prompt[:140]}"

    async def stream(self, prompt: str, temperature: float = 0.2) -> AsyncIterator[str]:
        output = await self.complete(prompt, temperature)
        for token in output.split(" "):
            yield f"{token} "

    async def extract_memories(
        self,
        conversation: str,
        existing_memories: list[MemoryRecord],
    ) -> list[MemoryCandidate]:
        return []
