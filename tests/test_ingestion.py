"""End-to-end tests for the ingestion service."""

import pytest

from ake.connectors.base import ConnectorBase, ConnectorRegistry
from ake.embeddings.embedder import HashEmbedder
from ake.ingest.parsers import UnsupportedFileType
from ake.ingest.processor import IngestionService, compute_hash
from ake.models import ConnectorSyncResult, IngestedDocument
from ake.retry import RetryPolicy
from ake.storage.objects import LocalObjectStorage
from ake.watcher import stage_file

from conftest import FailingEmbedder

DOC = "# Garden\nTomatoes need six hours of sun.\n\n# Finance\nThe budget review is on Friday."


class CountingEmbedder(HashEmbedder):
    def __init__(self):
        super().__init__(dimension=128)
        self.batches = []

    async def embed(self, texts, kind="passage"):
        self.batches.append(list(texts))
        if any("boom" in t for t in texts):
            raise RuntimeError("embedding backend refused the batch")
        return await super().embed(texts, kind)


class StaticConnector(ConnectorBase):
    provider = "github"

    def __init__(self, documents=None, error=None, skipped=0):
        self.documents = documents or []
        self.error = error
        self.skipped = skipped
        self.cursors = []

    async def sync(self, owner_id, connection_id, cursor=None):
        self.cursors.append(cursor)
        if self.error:
            raise self.error
        return ConnectorSyncResult(skipped=self.skipped, documents=list(self.documents))


def _service(knowledge, vector_store, embedder, tmp_path):
    storage = LocalObjectStorage(tmp_path / "objects")
    retry = RetryPolicy(min_delay=0, max_delay=0, jitter=0)
    return IngestionService(knowledge, vector_store, embedder, storage, {}, retry=retry)


async def test_document_is_chunked_embedded_and_searchable(knowledge, vector_store, tmp_path):
    embedder = CountingEmbedder()
    service = _service(knowledge, vector_store, embedder, tmp_path)

    result = await service.ingest_document("alice", "demo", "doc-1", DOC, title="Notes")
    assert result.changed is True
    assert result.chunks == 2

    query = await embedder.embed_query("When is the budget review")
    hits = vector_store.similarity_search("alice", query, k=1)
    assert hits[0].text == "The budget review is on Friday."
    assert hits[0].metadata["section_heading"] == "Finance"
    assert hits[0].metadata["source"] == "demo"
    assert hits[0].title == "Notes"


async def test_unchanged_document_is_not_reembedded(knowledge, vector_store, tmp_path):
    embedder = CountingEmbedder()
    service = _service(knowledge, vector_store, embedder, tmp_path)

    first = await service.ingest_document("alice", "demo", "doc-1", DOC)
    second = await service.ingest_document("alice", "demo", "doc-1", DOC)
    assert second.changed is False
    assert second.item_id == first.item_id
    assert len(embedder.batches) == 1
    assert knowledge.count_chunks("alice") == 2


async def test_changed_document_replaces_its_chunks(knowledge, vector_store, tmp_path):
    service = _service(knowledge, vector_store, CountingEmbedder(), tmp_path)
    first = await service.ingest_document("alice", "demo", "doc-1", DOC)
    await service.ingest_document("alice", "demo", "doc-1", "Only one short paragraph now.")
    live = knowledge.list_chunks("alice", first.item_id)
    assert [c.text for c in live] == ["Only one short paragraph now."]


async def test_blank_update_retires_old_chunks(knowledge, vector_store, tmp_path):
    service = _service(knowledge, vector_store, CountingEmbedder(), tmp_path)
    first = await service.ingest_document("alice", "demo", "doc-1", DOC)
    blank = await service.ingest_document("alice", "demo", "doc-1", "   ")
    assert blank.changed is True and blank.chunks == 0
    assert knowledge.list_chunks("alice", first.item_id) == []
    assert vector_store.similarity_search("alice", [1.0] * 128, k=5) == []


async def test_demo_document_ranks_matching_chunk_first(knowledge, vector_store, tmp_path):
    service = _service(knowledge, vector_store, CountingEmbedder(), tmp_path)
    result = await service.ingest_document("alice", "demo", "a", DOC)

    chunks = knowledge.list_chunks("alice", result.item_id)
    assert [c.chunk_index for c in chunks] == [0, 1]

    query = list(chunks[0].embedding)
    query[0] += 0.001
    hits = vector_store.similarity_search("alice", query, k=2)
    assert [h.chunk_id for h in hits] == [chunks[0].id, chunks[1].id]
    assert hits[0].score > hits[1].score


async def test_failed_embedding_leaves_item_retryable(knowledge, vector_store, tmp_path):
    embedder = FailingEmbedder(failures=1)
    service = _service(knowledge, vector_store, embedder, tmp_path)

    with pytest.raises(ValueError):
        await service.ingest_document("alice", "demo", "doc-1", DOC)
    assert knowledge.count_chunks("alice") == 0

    retried = await service.ingest_document("alice", "demo", "doc-1", DOC)
    assert retried.changed is True
    assert knowledge.count_chunks("alice") == 2


async def test_ingestion_is_audited(knowledge, vector_store, tmp_path):
    service = _service(knowledge, vector_store, CountingEmbedder(), tmp_path)
    await service.ingest_document("alice", "demo", "doc-1", DOC)
    logs = knowledge.list_audit_logs("alice")
    assert logs[0]["action"] == "source.ingested"
    assert logs[0]["details"]["chunk_count"] == 2


async def test_file_ingestion_and_redelivery(knowledge, vector_store, tmp_path):
    embedder = CountingEmbedder()
    service = _service(knowledge, vector_store, embedder, tmp_path)
    key = "alice/abc/notes.md"
    service.storage.put_object(key, b"---\ntitle: Field notes\n---\nBees like lavender.", "text/markdown")
    item_id = await service.create_file_item("alice", "notes.md", key, "text/markdown")

    first = await service.ingest_file("alice", item_id, key, "notes.md", "text/markdown")
    again = await service.ingest_file("alice", item_id, key, "notes.md", "text/markdown")
    assert first.changed is True and first.chunks == 1
    assert again.changed is False
    assert len(embedder.batches) == 1

    item = knowledge.get_item("alice", item_id)
    assert item.content_hash == compute_hash("Bees like lavender.")
    assert item.metadata["status"] == "indexed"
    assert item.metadata["parser"]["title"] == "Field notes"


async def test_restaging_unchanged_file_is_not_reembedded(knowledge, vector_store, tmp_path):
    embedder = CountingEmbedder()
    service = _service(knowledge, vector_store, embedder, tmp_path)
    path = tmp_path / "notes.txt"
    path.write_text("Bees like lavender.")

    results = []
    for _ in range(2):
        job = await stage_file(service, service.storage, "alice", path)
        results.append(await service.ingest_file("alice", job.item_id, job.object_key, job.file_name, job.mime_type))

    assert results[0].changed is True
    assert results[1].changed is False
    assert results[1].item_id == results[0].item_id
    assert len(embedder.batches) == 1
    assert knowledge.get_item("alice", results[0].item_id).metadata["status"] == "indexed"


async def test_file_ingestion_errors(knowledge, vector_store, tmp_path):
    service = _service(knowledge, vector_store, CountingEmbedder(), tmp_path)
    with pytest.raises(ValueError, match="not found"):
        await service.ingest_file("alice", "missing", "k", "a.txt")

    service.storage.put_object("alice/x/report.pdf", b"%PDF-1.4")
    item_id = await service.create_file_item("alice", "report.pdf", "alice/x/report.pdf", "application/pdf")
    with pytest.raises(UnsupportedFileType):
        await service.ingest_file("alice", item_id, "alice/x/report.pdf", "report.pdf", "application/pdf")


async def test_sync_reports_partial_failure(knowledge, vector_store, tmp_path):
    service = _service(knowledge, vector_store, CountingEmbedder(), tmp_path)
    connection = knowledge.upsert_connection("alice", "github", metadata={"cursor": "c-1"})
    connector = StaticConnector(
        skipped=1,
        documents=[
            IngestedDocument(item_id="i1", owner_id="alice", source="github", source_id="issue-1",
                             raw_text="Fix the login bug"),
            IngestedDocument(item_id="i2", owner_id="alice", source="github", source_id="issue-2",
                             raw_text=""),
            IngestedDocument(item_id="i3", owner_id="mallory", source="github", source_id="issue-3",
                             raw_text="Not yours"),
            IngestedDocument(item_id="i4", owner_id="alice", source="github", source_id="issue-4",
                             raw_text="boom"),
        ],
    )

    report = await service.sync_connection("alice", connection.id, connector)
    assert (report.inserted, report.skipped, report.failed) == (1, 2, 2)
    assert report.status == "error"
    assert connector.cursors == ["c-1"]

    stored = knowledge.get_connection(connection.id)
    assert stored.status == "error"
    assert stored.metadata["last_sync"]["inserted"] == 1
    assert stored.metadata["cursor"] == "c-1"
    assert knowledge.count_chunks("alice") == 1


async def test_clean_sync_marks_connection_connected(knowledge, vector_store, tmp_path):
    service = _service(knowledge, vector_store, CountingEmbedder(), tmp_path)
    connection = knowledge.upsert_connection("alice", "github")
    connector = StaticConnector(documents=[
        IngestedDocument(item_id="i1", owner_id="alice", source="github", source_id="pr-7", raw_text="Add tests"),
    ])
    report = await service.sync_connection("alice", connection.id, connector)
    assert report.status == "connected"
    assert knowledge.get_connection(connection.id).last_synced_at is not None

    again = await service.sync_connection("alice", connection.id, connector)
    assert (again.inserted, again.skipped) == (0, 1)


async def test_sync_failure_marks_connection_error(knowledge, vector_store, tmp_path):
    service = _service(knowledge, vector_store, CountingEmbedder(), tmp_path)
    connection = knowledge.upsert_connection("alice", "github")
    connector = StaticConnector(error=PermissionError("token revoked"))

    with pytest.raises(PermissionError):
        await service.sync_connection("alice", connection.id, connector)
    stored = knowledge.get_connection(connection.id)
    assert stored.status == "error"
    assert stored.metadata["last_error"] == "token revoked"
    assert len(connector.cursors) == 1


async def test_sync_rejects_foreign_connection(knowledge, vector_store, tmp_path):
    service = _service(knowledge, vector_store, CountingEmbedder(), tmp_path)
    connection = knowledge.upsert_connection("bob", "github")
    with pytest.raises(ValueError):
        await service.sync_connection("alice", connection.id, StaticConnector())


def test_connector_registry():
    registry = ConnectorRegistry([StaticConnector()])
    assert registry.providers() == ["github"]
    assert isinstance(registry.get("github"), StaticConnector)
    with pytest.raises(ValueError):
        registry.get("youtube")
