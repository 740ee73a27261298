"""Storage: the relational knowledge store and the vector retrieval backends."""

from .base import VectorStoreBase, cosine_similarity, get_vector_store
from .knowledge import KnowledgeStore, UpsertResult

__all__ = ["KnowledgeStore", "UpsertResult", "VectorStoreBase", "cosine_similarity", "get_vector_store"]
