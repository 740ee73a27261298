"""Shared fakes for the engine tests."""

import asyncio

import pytest

from ake.embeddings.embedder import EmbedderBase, HashEmbedder
from ake.llm.base import LlmBase
from ake.storage.exact import ExactVectorStore
from ake.storage.knowledge import KnowledgeStore


class ScriptedLlm(LlmBase):
    """Returns queued completions in order and records every prompt."""

    model_name = "scripted"

    def __init__(self, responses=None, tokens=None, fail_stream=False):
        self.responses = list(responses or [])
        self.tokens = list(tokens or ["Hello", " world"])
        self.fail_stream = fail_stream
        self.prompts = []

    async def complete(self, prompt, temperature=0.2):
        self.prompts.append(prompt)
        if self.responses:
            return self.responses.pop(0)
        return "ok"

    async def stream(self, prompt, temperature=0.2):
        self.prompts.append(prompt)
        for token in self.tokens:
            await asyncio.sleep(0)
            yield token
        if self.fail_stream:
            raise RuntimeError("stream dropped")


class ExplodingLlm(LlmBase):
    """Fails on any use."""

    async def complete(self, prompt, temperature=0.2):
        raise AssertionError("llm should not be called")

    async def stream(self, prompt, temperature=0.2):
        raise AssertionError("llm should not be called")
        yield ""  # pragma: no cover


class ExplodingEmbedder(EmbedderBase):
    async def embed(self, texts, kind="passage"):
        raise AssertionError("embedder should not be called")


class FailingEmbedder(EmbedderBase):
    """Raises a permanent error for the first ``failures`` calls."""

    def __init__(self, failures=1):
        self.failures = failures
        self.inner = HashEmbedder()
        self.calls = 0

    async def embed(self, texts, kind="passage"):
        self.calls += 1
        if self.calls <= self.failures:
            raise ValueError("embedding model rejected input")
        return await self.inner.embed(texts, kind)


@pytest.fixture
def knowledge():
    store = KnowledgeStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def vector_store(knowledge):
    return ExactVectorStore(knowledge)


@pytest.fixture
def embedder():
    return HashEmbedder(dimension=128)
