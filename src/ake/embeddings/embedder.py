"""Embedding adapters: sentence-transformers and an offline hashing fallback."""

import asyncio
import hashlib
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import numpy as np

from ..retry import RetryPolicy

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class EmbedderBase(ABC):
    """Turns text into fixed-length vectors.

    ``kind`` is ``"passage"`` for stored text and ``"query"`` for search input;
    adapters that do not distinguish the two ignore it.
    """

    model_name: str = ""
    dimension: int = 0

    @abstractmethod
    async def embed(self, texts: list[str], kind: str = "passage") -> list[list[float]]:
        """Embed a batch of texts, one vector per input in order."""

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed([text], kind="query")
        return vectors[0]


class SentenceTransformerEmbedder(EmbedderBase):
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, config: dict[str, Any], retry: RetryPolicy | None = None, batch_size: int = 32):
        self.model_name = config.get("embedding_model", "intfloat/e5-large-v2")
        self.retry = retry or RetryPolicy()
        self.batch_size = batch_size
        self._model = None

    @property
    def model(self):
        """Lazy-load the embedding model."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            logger.info(f"Loading embedding model {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    @property
    def dimension(self) -> int:
        return int(self.model.get_sentence_embedding_dimension())

    def _prefix(self, text: str, kind: str) -> str:
        # e5 models expect "passage: " / "query: " prefixes
        if "e5" in self.model_name.lower():
            return f"{kind}: {text}"
        return text

    def _encode(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            vectors.extend(self.model.encode(batch, normalize_embeddings=True).tolist())
        return vectors

    async def embed(self, texts: list[str], kind: str = "passage") -> list[list[float]]:
        if not texts:
            return []
        prepared = [self._prefix(t, kind) for t in texts]
        return await self.retry.run(lambda: asyncio.to_thread(self._encode, prepared))


class HashEmbedder(EmbedderBase):
    """Deterministic feature-hashing embedder.

    No semantic quality to speak of, but identical text always maps to the same
    unit vector and texts sharing words land close together, which is enough
    for offline use and tests.
    """

    model_name = "hash"

    def __init__(self, dimension: int = 256):
        self.dimension = dimension

    def embed_one(self, text: str) -> list[float]:
        vector = np.zeros(self.dimension, dtype=float)
        for token in TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.tolist()

    async def embed(self, texts: list[str], kind: str = "passage") -> list[list[float]]:
        return [self.embed_one(t) for t in texts]


def get_embedder(config: dict[str, Any], retry: RetryPolicy | None = None) -> EmbedderBase:
    """Factory: return the embedder named by ``embedding_provider``."""
    provider = config.get("embedding_provider", "sentence-transformers")
    if provider == "sentence-transformers":
        return SentenceTransformerEmbedder(config, retry=retry)
    elif provider == "hash":
        return HashEmbedder(config.get("embedding_dimension", 256))
    else:
        raise ValueError(f"Unknown embedding_provider: {provider}")
