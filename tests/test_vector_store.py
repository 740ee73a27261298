"""Tests for the retrieval backends."""

import pytest

from ake.models import KnowledgeChunk
from ake.storage.base import cosine_similarity, get_vector_store
from ake.storage.exact import ExactVectorStore
from ake.storage.knowledge import chunk_id_for


def _seed(store, owner, source_id, vectors, metadata=None):
    item = store.knowledge.upsert_item(owner, "demo", source_id, "text", None, None, f"h-{source_id}", title=source_id)
    chunks = [
        KnowledgeChunk(
            id=chunk_id_for(item.id, i),
            knowledge_item_id=item.id,
            owner_id=owner,
            chunk_index=i,
            text=f"{source_id} chunk {i}",
            token_count=3,
            embedding=vector,
            content_hash=f"{source_id}-{i}",
            metadata=dict(metadata or {}),
        )
        for i, vector in enumerate(vectors)
    ]
    store.upsert_chunks(chunks)
    return item.id, [c.id for c in chunks]


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0
    assert cosine_similarity([1, 0, 0], [1, 0]) == 0.0
    assert cosine_similarity([], []) == 0.0


def test_exact_ranks_by_score_then_id(vector_store):
    _, near = _seed(vector_store, "alice", "near", [[1.0, 0.0], [1.0, 0.0]])
    _, far = _seed(vector_store, "alice", "far", [[0.0, 1.0]])

    hits = vector_store.similarity_search("alice", [1.0, 0.0], k=3)
    assert [h.chunk_id for h in hits] == sorted(near) + far
    assert hits[0].score == pytest.approx(1.0)
    assert hits[-1].score == pytest.approx(0.0)


def test_exact_respects_k_owner_and_filters(vector_store):
    _seed(vector_store, "alice", "a", [[1.0, 0.0]], {"source": "github"})
    _, wanted = _seed(vector_store, "alice", "b", [[0.5, 0.5]], {"source": "gmail"})
    _seed(vector_store, "bob", "c", [[1.0, 0.0]], {"source": "gmail"})

    assert len(vector_store.similarity_search("alice", [1.0, 0.0], k=1)) == 1
    assert vector_store.similarity_search("alice", [1.0, 0.0], k=0) == []
    hits = vector_store.similarity_search("alice", [1.0, 0.0], k=5, filters={"source": "gmail"})
    assert [h.chunk_id for h in hits] == wanted
    assert vector_store.similarity_search("carol", [1.0, 0.0], k=5) == []


def test_exact_skips_deleted_items(vector_store):
    item_id, _ = _seed(vector_store, "alice", "gone", [[1.0, 0.0]])
    vector_store.knowledge.soft_delete_item("alice", item_id)
    assert vector_store.similarity_search("alice", [1.0, 0.0], k=5) == []


def test_memory_search_by_embedding_and_text(vector_store):
    knowledge = vector_store.knowledge
    tea, _ = knowledge.upsert_memory("alice", "preference", "Likes green tea", 0.8, embedding=[1.0, 0.0])
    dog, _ = knowledge.upsert_memory("alice", "fact", "Has a dog", 0.8, embedding=[0.0, 1.0])

    ranked = vector_store.memory_search("alice", "anything", embedding=[0.9, 0.1], k=2)
    assert [m.id for m in ranked] == [tea.id, dog.id]
    assert ranked[0].score > ranked[1].score

    by_text = vector_store.memory_search("alice", "dog", embedding=None, k=2)
    assert [m.id for m in by_text] == [dog.id]


def test_factory_selects_backend(knowledge):
    assert isinstance(get_vector_store({"storage_backend": "exact"}, knowledge), ExactVectorStore)
    with pytest.raises(ValueError):
        get_vector_store({"storage_backend": "redis"}, knowledge)


def test_chroma_backend_filters_stale_hits(knowledge, tmp_path):
    pytest.importorskip("chromadb")
    from ake.storage.chromadb import ChromaVectorStore, build_where

    store = ChromaVectorStore(knowledge, str(tmp_path / "chroma"))
    keep_item, keep = _seed(store, "alice", "keep", [[1.0, 0.0, 0.0]])
    drop_item, _ = _seed(store, "alice", "drop", [[0.9, 0.1, 0.0]])
    _seed(store, "bob", "other", [[1.0, 0.0, 0.0]])
    knowledge.soft_delete_item("alice", drop_item)

    hits = store.similarity_search("alice", [1.0, 0.0, 0.0], k=5)
    assert [h.chunk_id for h in hits] == keep
    assert hits[0].score == pytest.approx(1.0, abs=1e-4)
    assert build_where("alice", {"source": "x"}) == {"$and": [{"owner_id": "alice"}, {"source": "x"}]}


def test_chroma_backend_indexes_memories(knowledge, tmp_path):
    pytest.importorskip("chromadb")
    from ake.storage.chromadb import ChromaVectorStore

    store = ChromaVectorStore(knowledge, str(tmp_path / "chroma"))
    record, _ = knowledge.upsert_memory("alice", "fact", "Runs marathons", 0.9, embedding=[0.0, 1.0, 0.0])
    store.index_memory(record, [0.0, 1.0, 0.0])

    hits = store.memory_search("alice", "marathons", embedding=[0.0, 1.0, 0.0], k=3)
    assert [m.id for m in hits] == [record.id]
    knowledge.delete_memory("alice", record.id)
    assert store.memory_search("alice", "marathons", embedding=[0.0, 1.0, 0.0], k=3) == []
