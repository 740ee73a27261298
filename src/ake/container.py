"""Wires the engine's services together from one config dict."""

from dataclasses import dataclass
from typing import Any

from .agent.tools import AgentDeps
from .chat import ChatService
from .config import section
from .connectors.base import ConnectorBase, ConnectorRegistry
from .embeddings.embedder import EmbedderBase, get_embedder
from .ingest.processor import IngestionService
from .llm.base import LlmBase, get_llm
from .memory.reflection import ReflectionDeps
from .qa import RagAssembler
from .retry import RetryPolicy
from .storage.base import VectorStoreBase, get_vector_store
from .storage.knowledge import KnowledgeStore
from .storage.objects import LocalObjectStorage
from .workers import JobHandlers, Worker


@dataclass
class Engine:
    config: dict[str, Any]
    retry: RetryPolicy
    knowledge: KnowledgeStore
    vector_store: VectorStoreBase
    embedder: EmbedderBase
    llm: LlmBase
    storage: LocalObjectStorage
    connectors: ConnectorRegistry
    ingestion: IngestionService
    rag: RagAssembler
    agent_deps: AgentDeps
    reflection_deps: ReflectionDeps
    worker: Worker
    chat: ChatService

    def close(self) -> None:
        self.knowledge.close()


def build_engine(
    config: dict[str, Any],
    llm: LlmBase | None = None,
    embedder: EmbedderBase | None = None,
    connectors: list[ConnectorBase] | None = None,
) -> Engine:
    """Build every service once. ``llm`` and ``embedder`` override the configured adapters."""
    retry = RetryPolicy.from_config(config)
    knowledge = KnowledgeStore(config.get("db_path", ":memory:"))
    vector_store = get_vector_store(config, knowledge)
    embedder = embedder or get_embedder(config, retry=retry)
    llm = llm or get_llm(config, retry=retry)
    storage = LocalObjectStorage(config["objects_path"])
    registry = ConnectorRegistry(connectors)

    retrieval = section(config, "retrieval")
    reflection = section(config, "reflection")

    ingestion = IngestionService(knowledge, vector_store, embedder, storage, config, retry=retry)
    rag = RagAssembler(
        llm, embedder, vector_store, knowledge,
        chunk_k=retrieval["chunk_k"],
        memory_k=retrieval["memory_k"],
        history_limit=retrieval["history_limit"],
    )
    agent_deps = AgentDeps(llm=llm, embedder=embedder, vector_store=vector_store, knowledge=knowledge)
    reflection_deps = ReflectionDeps(llm=llm, embedder=embedder, vector_store=vector_store, knowledge=knowledge)
    handlers = JobHandlers(
        ingestion, registry, reflection_deps, knowledge,
        message_limit=reflection["message_limit"],
        merge_threshold=reflection["merge_threshold"],
    )
    worker = Worker(handlers)
    chat = ChatService(knowledge, rag, agent_deps, worker.dispatch, reflect_every=reflection["every"])

    return Engine(
        config=config,
        retry=retry,
        knowledge=knowledge,
        vector_store=vector_store,
        embedder=embedder,
        llm=llm,
        storage=storage,
        connectors=registry,
        ingestion=ingestion,
        rag=rag,
        agent_deps=agent_deps,
        reflection_deps=reflection_deps,
        worker=worker,
        chat=chat,
    )
