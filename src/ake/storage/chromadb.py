"""ChromaDB backend: approximate nearest-neighbour ranking over a persistent HNSW index.

The index only ranks. Hits are re-checked against the KnowledgeStore so
soft-deleted or retired rows never surface, which is why queries over-fetch.
"""

import logging
from pathlib import Path
from typing import Any

import chromadb

from ..models import KnowledgeChunk, MemoryRecord, RetrievedChunk, RetrievedMemory
from .base import VectorStoreBase, rank
from .knowledge import KnowledgeStore, matches_filters

logger = logging.getLogger(__name__)

CHUNK_COLLECTION = "knowledge_chunks"
MEMORY_COLLECTION = "memories"

SCALAR_TYPES = (str, int, float, bool)


def flatten_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Chroma only stores scalar metadata values."""
    return {k: v for k, v in metadata.items() if isinstance(v, SCALAR_TYPES)}


def build_where(owner_id: str, filters: dict[str, Any] | None = None) -> dict[str, Any]:
    conditions = [{"owner_id": owner_id}]
    for key, value in (filters or {}).items():
        if isinstance(value, SCALAR_TYPES):
            conditions.append({key: value})
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


class ChromaVectorStore(VectorStoreBase):
    """ChromaDB-backed persistent vector store."""

    def __init__(self, knowledge: KnowledgeStore, chroma_path: str, overfetch: int = 4):
        super().__init__(knowledge)
        self.chroma_path = Path(chroma_path)
        self.chroma_path.mkdir(parents=True, exist_ok=True)
        self.client = chromadb.PersistentClient(path=str(self.chroma_path))
        self.overfetch = max(1, int(overfetch))

    def get_or_create_collection(self, name: str) -> chromadb.Collection:
        return self.client.get_or_create_collection(
            name=name,
            metadata={"hnsw:space": "cosine"},
        )

    def upsert_chunks(self, chunks: list[KnowledgeChunk]) -> None:
        if not chunks:
            return
        self.knowledge.upsert_chunks(chunks)
        collection = self.get_or_create_collection(CHUNK_COLLECTION)
        collection.upsert(
            ids=[c.id for c in chunks],
            embeddings=[list(c.embedding) for c in chunks],
            documents=[c.text for c in chunks],
            metadatas=[
                {
                    **flatten_metadata(c.metadata),
                    "owner_id": c.owner_id,
                    "knowledge_item_id": c.knowledge_item_id,
                    "chunk_index": c.chunk_index,
                }
                for c in chunks
            ],
        )

    def _query(self, name: str, embedding: list[float], k: int, where: dict[str, Any]) -> list[tuple[str, float]]:
        collection = self.get_or_create_collection(name)
        total = collection.count()
        if total == 0 or k <= 0:
            return []
        results = collection.query(
            query_embeddings=[embedding],
            n_results=min(k * self.overfetch, total),
            where=where,
            include=["distances"],
        )
        ids = results["ids"][0] if results["ids"] else []
        distances = results["distances"][0] if results.get("distances") else [0.0] * len(ids)
        return [(hit_id, 1.0 - float(dist)) for hit_id, dist in zip(ids, distances)]

    def similarity_search(
        self,
        owner_id: str,
        embedding: list[float],
        k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[RetrievedChunk]:
        hits = self._query(CHUNK_COLLECTION, embedding, k, build_where(owner_id, filters))
        live = self.knowledge.get_live_chunks(owner_id, [hit_id for hit_id, _ in hits])

        scored = []
        for hit_id, score in hits:
            chunk = live.get(hit_id)
            if chunk is None or not matches_filters(chunk.metadata, filters):
                continue
            chunk.score = score
            scored.append(chunk)
        if len(scored) < len(hits):
            logger.debug(f"Dropped {len(hits) - len(scored)} stale index hits for {owner_id}")
        return rank(scored, k)

    def index_memory(self, memory: MemoryRecord, embedding: list[float] | None) -> None:
        if not embedding:
            return
        collection = self.get_or_create_collection(MEMORY_COLLECTION)
        collection.upsert(
            ids=[memory.id],
            embeddings=[list(embedding)],
            documents=[memory.content],
            metadatas=[{"owner_id": memory.owner_id, "type": memory.type}],
        )

    def rank_memories(self, owner_id: str, embedding: list[float], k: int) -> list[RetrievedMemory]:
        hits = self._query(MEMORY_COLLECTION, embedding, k, build_where(owner_id))
        live = self.knowledge.get_memories(owner_id, [hit_id for hit_id, _ in hits])

        scored = []
        for hit_id, score in hits:
            memory = live.get(hit_id)
            if memory is None:
                continue
            scored.append(RetrievedMemory(
                id=memory.id,
                type=memory.type,
                content=memory.content,
                confidence=memory.confidence,
                pinned=memory.pinned,
                score=score,
            ))
        return rank(scored, k)
