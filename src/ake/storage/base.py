"""Abstract base class for vector stores and factory function."""

from abc import ABC, abstractmethod
from typing import Any, Sequence

import numpy as np

from ..models import KnowledgeChunk, MemoryRecord, RetrievedChunk, RetrievedMemory
from .knowledge import KnowledgeStore


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 for a zero vector or mismatched lengths."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def rank(scored: list[Any], k: int) -> list[Any]:
    """Sort by descending score, ties by id, and keep the first ``k``."""
    def key(hit):
        hit_id = getattr(hit, "chunk_id", None) or hit.id
        return (-hit.score, hit_id)
    return sorted(scored, key=key)[:max(0, k)]


class VectorStoreBase(ABC):
    """Common similarity-search contract for the retrieval backends.

    Both backends rank by descending cosine similarity with ties broken by id
    ascending. Chunk and memory rows themselves live in the KnowledgeStore;
    a backend only decides how they are ranked.
    """

    def __init__(self, knowledge: KnowledgeStore):
        self.knowledge = knowledge

    @abstractmethod
    def upsert_chunks(self, chunks: list[KnowledgeChunk]) -> None:
        """Persist embedded chunks and make them searchable."""

    @abstractmethod
    def similarity_search(
        self,
        owner_id: str,
        embedding: list[float],
        k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[RetrievedChunk]:
        """Top-k live chunks of ``owner_id`` matching every equality filter."""

    @abstractmethod
    def rank_memories(self, owner_id: str, embedding: list[float], k: int) -> list[RetrievedMemory]:
        """Top-k live memories of ``owner_id`` by embedding similarity."""

    def index_memory(self, memory: MemoryRecord, embedding: list[float] | None) -> None:
        """Hook for backends that keep their own memory index."""

    def memory_search(
        self,
        owner_id: str,
        query: str,
        embedding: list[float] | None = None,
        k: int = 4,
    ) -> list[RetrievedMemory]:
        """Rank memories by embedding, or fall back to a substring match on ``query``."""
        if embedding:
            return self.rank_memories(owner_id, embedding, k)
        return self.knowledge.search_memories_text(owner_id, query, k)


def get_vector_store(config: dict[str, Any], knowledge: KnowledgeStore) -> VectorStoreBase:
    """Factory: return the right vector store based on config."""
    backend = config.get("storage_backend", "exact")

    if backend == "exact":
        from .exact import ExactVectorStore
        return ExactVectorStore(knowledge)
    elif backend == "chromadb":
        from .chromadb import ChromaVectorStore
        overfetch = config.get("retrieval", {}).get("overfetch", 4)
        return ChromaVectorStore(knowledge, config["chroma_path"], overfetch=overfetch)
    else:
        raise ValueError(f"Unknown storage_backend: {backend}")
