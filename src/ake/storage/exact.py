"""In-process backend: exact cosine similarity over the live rows."""

from typing import Any

from ..models import KnowledgeChunk, RetrievedChunk, RetrievedMemory
from .base import VectorStoreBase, cosine_similarity, rank


class ExactVectorStore(VectorStoreBase):
    """Brute-force ranking. Exact, and fine for a personal-sized corpus."""

    def upsert_chunks(self, chunks: list[KnowledgeChunk]) -> None:
        self.knowledge.upsert_chunks(chunks)

    def similarity_search(
        self,
        owner_id: str,
        embedding: list[float],
        k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[RetrievedChunk]:
        scored = []
        for hit, vector in self.knowledge.list_live_chunks(owner_id, filters):
            hit.score = cosine_similarity(embedding, vector)
            scored.append(hit)
        return rank(scored, k)

    def rank_memories(self, owner_id: str, embedding: list[float], k: int) -> list[RetrievedMemory]:
        scored = [
            RetrievedMemory(
                id=memory.id,
                type=memory.type,
                content=memory.content,
                confidence=memory.confidence,
                pinned=memory.pinned,
                score=cosine_similarity(embedding, vector),
            )
            for memory, vector in self.knowledge.list_memory_embeddings(owner_id)
        ]
        return rank(scored, k)
