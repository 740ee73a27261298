"""Tests for background jobs, chat orchestration and the drop watcher."""

import asyncio
import json

import pytest

from ake.agent.planner import confirmation_key
from ake.chat import ChatService
from ake.connectors.base import ConnectorBase
from ake.container import build_engine
from ake.models import ConnectorSyncResult, IngestedDocument
from ake.watcher import DropWatcher, object_key_for, stage_file
from ake.workers import (
    ConnectorIngestionJob,
    FileIngestionJob,
    ReflectionJob,
    ingestion_job_from_payload,
)

from conftest import ScriptedLlm


class OneDocConnector(ConnectorBase):
    provider = "youtube"

    async def sync(self, owner_id, connection_id, cursor=None):
        return ConnectorSyncResult(documents=[
            IngestedDocument(item_id="v1", owner_id=owner_id, source="youtube", source_id="vid-1",
                             raw_text="Transcript about sourdough starters."),
        ])


@pytest.fixture
def engine_config(tmp_path):
    return {
        "db_path": ":memory:",
        "objects_path": str(tmp_path / "objects"),
        "drop_path": str(tmp_path / "drop"),
        "storage_backend": "exact",
        "embedding_provider": "hash",
        "retry": {"attempts": 2, "min_delay": 0, "max_delay": 0, "jitter": 0},
        "reflection": {"every": 4},
    }


@pytest.fixture
def make_engine(engine_config):
    engines = []

    def factory(llm=None, connectors=None):
        engine = build_engine(engine_config, llm=llm or ScriptedLlm(), connectors=connectors)
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.close()


def test_file_job_payload_accepts_both_spellings():
    snake = ingestion_job_from_payload({
        "kind": "file", "owner_id": "alice", "item_id": "i1",
        "object_key": "k", "file_name": "a.md", "mime_type": "text/markdown",
    })
    camel = ingestion_job_from_payload({
        "kind": "file", "userId": "alice", "itemId": "i1", "objectKey": "k",
        "fileName": "a.md", "mimeType": "text/markdown",
    })
    assert snake == camel
    assert isinstance(snake, FileIngestionJob)


def test_connector_job_payload():
    job = ingestion_job_from_payload({
        "kind": "connector", "owner": "alice", "provider": "github", "connectionId": "c1",
    })
    assert job == ConnectorIngestionJob(owner_id="alice", provider="github", connection_id="c1")


def test_invalid_payloads_raise():
    with pytest.raises(ValueError, match="kind"):
        ingestion_job_from_payload({"kind": "fax", "owner_id": "alice"})
    with pytest.raises(ValueError, match="object_key"):
        ingestion_job_from_payload({"kind": "file", "owner_id": "alice", "item_id": "i", "file_name": "f"})
    with pytest.raises(ValueError, match="owner_id"):
        ReflectionJob.from_payload({"conversationId": "c1"})


def test_reflection_job_payload():
    job = ReflectionJob.from_payload({"userId": "alice", "conversationId": "c1", "messageIds": ["m1"]})
    assert job == ReflectionJob(owner_id="alice", conversation_id="c1", message_ids=["m1"])


async def test_worker_runs_file_jobs_and_survives_failures(make_engine, tmp_path):
    engine = make_engine()
    path = tmp_path / "notes.txt"
    path.write_text("Sourdough needs a warm kitchen.")
    job = await stage_file(engine.ingestion, engine.storage, "alice", path)

    await engine.worker.dispatch(FileIngestionJob("alice", "missing", "k", "x.txt"))
    await engine.worker.dispatch(job)
    await engine.worker.dispatch(job)
    assert await engine.worker.drain() == 3

    assert engine.worker.failed == 1
    assert engine.worker.completed == 2
    assert engine.knowledge.count_chunks("alice") == 1
    assert job.object_key == object_key_for("alice", path, path.read_bytes())


async def test_worker_runs_connector_jobs(make_engine):
    engine = make_engine(connectors=[OneDocConnector()])
    connection = engine.knowledge.upsert_connection("alice", "youtube")
    await engine.worker.dispatch(ConnectorIngestionJob("alice", "youtube", connection.id))
    await engine.worker.drain()
    assert engine.knowledge.get_connection(connection.id).status == "connected"
    assert [i.source_id for i in engine.knowledge.list_items("alice")] == ["vid-1"]


async def test_reflection_job_respects_stored_consent(make_engine):
    llm = ScriptedLlm(responses=[json.dumps([{"type": "fact", "content": "Bakes bread", "confidence": 0.8}])])
    engine = make_engine(llm=llm)
    conversation_id = engine.knowledge.create_conversation("alice")
    engine.knowledge.save_message(conversation_id, "user", "I bake bread every Sunday.")

    engine.knowledge.set_learning_consent("alice", False)
    skipped = await engine.worker.handlers.handle(ReflectionJob("alice", conversation_id))
    assert (skipped.created, skipped.updated) == (0, 0)
    assert llm.prompts == []

    engine.knowledge.set_learning_consent("alice", True)
    result = await engine.worker.handlers.handle(ReflectionJob("alice", conversation_id))
    assert result.created == 1


async def test_chat_creates_conversation_and_queues_reflection_on_cadence(make_engine):
    engine = make_engine()
    first = await engine.chat.send("alice", "Hello there, what do you know about me?")
    conversation = engine.knowledge.get_conversation("alice", first.conversation_id)
    assert conversation["title"] == "Hello there, what do you know about me?"
    assert first.response is not None
    assert first.reflection_queued is False

    second = await engine.chat.send("alice", "And what else?", conversation_id=first.conversation_id)
    assert second.reflection_queued is True
    assert engine.knowledge.count_messages(first.conversation_id) == 4

    job = engine.worker.queue.get_nowait()
    assert isinstance(job, ReflectionJob)
    assert job.conversation_id == first.conversation_id
    assert len(job.message_ids) == 4


async def test_chat_rejects_unknown_conversation(make_engine):
    engine = make_engine()
    with pytest.raises(ValueError, match="Conversation not found"):
        await engine.chat.send("alice", "hi", conversation_id="nope")
    other = engine.knowledge.create_conversation("bob")
    with pytest.raises(ValueError):
        await engine.chat.send("alice", "hi", conversation_id=other)


async def test_chat_agent_mode_saves_reply_and_proposes_actions(make_engine):
    args = {"title": "Buy flour"}
    llm = ScriptedLlm(responses=[
        json.dumps({"answerIntent": "task", "toolCalls": [{"toolName": "create_task", "args": args}]}),
        "Want me to add that task?",
    ])
    engine = make_engine(llm=llm)
    turn = await engine.chat.send("alice", "Remind me to buy flour", agent_mode=True)

    assert turn.agent.proposed_actions == [confirmation_key("create_task", args)]
    messages = engine.knowledge.get_conversation_messages(turn.conversation_id)
    assert [(m.role, m.content) for m in messages] == [
        ("user", "Remind me to buy flour"),
        ("assistant", "Want me to add that task?"),
    ]


async def test_chat_stream_queues_reflection_before_done(knowledge, vector_store, embedder):
    from ake.qa import RagAssembler
    from ake.agent.tools import AgentDeps

    llm = ScriptedLlm(tokens=["ok"])
    dispatched = []

    async def dispatch(job):
        dispatched.append(job)

    rag = RagAssembler(llm, embedder, vector_store, knowledge)
    chat = ChatService(knowledge, rag, AgentDeps(llm, embedder, vector_store, knowledge), dispatch, reflect_every=2)
    conversation_id = await chat.begin("alice", "stream please")

    async for event in chat.stream("alice", conversation_id, "stream please"):
        if event.type == "done":
            break
    assert len(dispatched) == 1


async def test_watcher_batch_stages_and_queues(make_engine, tmp_path):
    engine = make_engine()
    drop = tmp_path / "drop"
    drop.mkdir()
    (drop / "a.md").write_text("# Title\nBody text.")
    watcher = DropWatcher(engine.ingestion, engine.storage, engine.worker, "alice", drop, debounce=0.01)

    queued = await watcher.process_batch([str(drop / "a.md"), str(drop / "gone.md")])
    assert queued == 1
    await engine.worker.drain()
    assert engine.knowledge.count_chunks("alice") == 1


async def test_watcher_run_stops_on_event(make_engine, tmp_path):
    engine = make_engine()
    watcher = DropWatcher(engine.ingestion, engine.storage, engine.worker, "alice", tmp_path / "drop")
    stop = asyncio.Event()
    task = asyncio.create_task(watcher.run(stop))
    await asyncio.sleep(0.1)
    stop.set()
    await asyncio.wait_for(task, timeout=5)
    assert (tmp_path / "drop").is_dir()
