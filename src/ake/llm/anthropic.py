"""Claude adapter built on the anthropic SDK."""

import dataclasses
import logging
from typing import Any, AsyncIterator

import anthropic

from ..retry import RetryPolicy
from .base import LlmBase, MissingApiKeyError

logger = logging.getLogger(__name__)


class AnthropicLlm(LlmBase):
    """LlmBase backed by the Anthropic messages API.

    Construction fails with ``MissingApiKeyError`` when no key is configured,
    so callers can substitute another adapter up front.
    """

    def __init__(self, config: dict[str, Any], retry: RetryPolicy | None = None, max_tokens: int = 2000):
        api_key = config.get("claude_api_key")
        if not api_key:
            raise MissingApiKeyError(
                "Claude API key required. Set ANTHROPIC_API_KEY or claude_api_key in config."
            )
        self.client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        self.model_name = config.get("claude_model", "claude-sonnet-4-20250514")
        self.max_tokens = max_tokens

        policy = retry or RetryPolicy()
        base_should_retry = policy.should_retry

        def should_retry(error: BaseException, attempt: int) -> bool:
            if isinstance(error, anthropic.APIConnectionError):
                return True
            return base_should_retry(error, attempt)

        self.retry = dataclasses.replace(policy, should_retry=should_retry)

    def _request(self, prompt: str, temperature: float) -> dict[str, Any]:
        return {
            "model": self.model_name,
            "max_tokens": self.max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }

    async def complete(self, prompt: str, temperature: float = 0.2) -> str:
        response = await self.retry.run(
            lambda: self.client.messages.create(**self._request(prompt, temperature))
        )
        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")

    async def stream(self, prompt: str, temperature: float = 0.2) -> AsyncIterator[str]:
        # Only opening the stream is retried; tokens already yielded cannot be replayed
        events = await self.retry.run(
            lambda: self.client.messages.create(**self._request(prompt, temperature), stream=True)
        )
        try:
            async for event in events:
                if event.type == "content_block_delta" and getattr(event.delta, "type", "") == "text_delta":
                    yield event.delta.text
        finally:
            await events.close()
