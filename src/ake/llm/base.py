"""Language-model adapter interface and factory."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from ..models import MEMORY_TYPES, MemoryCandidate, MemoryRecord
from ..retry import RetryPolicy
from .parsing import Parsed, parse_json_payload
from .prompts import MEMORY_EXTRACTION_PROMPT, TEMPERATURE_EXTRACT

logger = logging.getLogger(__name__)


class MissingApiKeyError(ValueError):
    """A provider adapter was built without its credentials."""


def parse_memory_candidates(raw: str) -> list[MemoryCandidate]:
    """Turn extractor output into candidates, dropping anything malformed."""
    result = parse_json_payload(raw)
    if not isinstance(result, Parsed) or not isinstance(result.value, list):
        logger.debug("Memory extraction returned no JSON array")
        return []

    candidates = []
    for entry in result.value:
        if not isinstance(entry, dict) or not isinstance(entry.get("content"), str):
            continue
        if entry.get("type") not in MEMORY_TYPES:
            continue
        try:
            confidence = float(entry.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        should_update = entry.get("shouldUpdateId")
        candidates.append(MemoryCandidate(
            type=entry["type"],
            content=entry["content"].strip(),
            confidence=confidence,
            should_update_id=should_update if isinstance(should_update, str) and should_update else None,
        ))
    return candidates


class LlmBase(ABC):
    """Completion, streaming and structured memory extraction."""

    model_name: str = ""

    @abstractmethod
    async def complete(self, prompt: str, temperature: float = 0.2) -> str:
        """Return the full completion for a single user prompt."""

    @abstractmethod
    def stream(self, prompt: str, temperature: float = 0.2) -> AsyncIterator[str]:
        """Yield completion text incrementally."""

    async def extract_memories(
        self,
        conversation: str,
        existing_memories: list[MemoryRecord],
    ) -> list[MemoryCandidate]:
        """Ask the model for durable memories. Malformed output gives an empty list."""
        existing = json.dumps([
            {"id": m.id, "type": m.type, "content": m.content} for m in existing_memories
        ])
        prompt = MEMORY_EXTRACTION_PROMPT.format(existing=existing, conversation=conversation)
        raw = await self.complete(prompt, temperature=TEMPERATURE_EXTRACT)
        return parse_memory_candidates(raw)


def get_llm(config: dict[str, Any], retry: RetryPolicy | None = None) -> LlmBase:
    """Factory: Claude when a key is configured, otherwise the offline mock."""
    try:
        from .anthropic import AnthropicLlm
        return AnthropicLlm(config, retry=retry)
    except MissingApiKeyError as e:
        logger.warning(f"{e} Falling back to the offline mock model.")
        from .mock import MockLlm
        return MockLlm()
