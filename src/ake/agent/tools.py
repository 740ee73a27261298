"""Built-in agent tools and the catalog the planner sees."""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

from ..embeddings.embedder import EmbedderBase
from ..llm.base import LlmBase
from ..llm.prompts import DRAFT_EMAIL_PROMPT, SUMMARIZE_PROMPT, TEMPERATURE_DRAFT, TEMPERATURE_SUMMARIZE
from ..storage.base import VectorStoreBase
from ..storage.knowledge import KnowledgeStore

logger = logging.getLogger(__name__)

ToolFn = Callable[[dict[str, Any], str], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolCatalogEntry:
    name: str
    description: str
    requires_confirmation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "requiresConfirmation": self.requires_confirmation,
        }


@dataclass
class AgentDeps:
    llm: LlmBase
    embedder: EmbedderBase
    vector_store: VectorStoreBase
    knowledge: KnowledgeStore


@dataclass
class AgentTool:
    entry: ToolCatalogEntry
    run: ToolFn

    @property
    def name(self) -> str:
        return self.entry.name


def _item_id(args: dict[str, Any]) -> str:
    return str(args.get("item_id") or args.get("itemId") or "")


def build_tools(deps: AgentDeps) -> dict[str, AgentTool]:
    """The fixed tool set, keyed by name."""

    async def search_knowledge_base(args: dict[str, Any], owner_id: str) -> dict[str, Any]:
        query = str(args.get("query") or "")
        try:
            k = int(args.get("k", 5))
        except (TypeError, ValueError):
            k = 5
        filters = args.get("filters") if isinstance(args.get("filters"), dict) else None
        embedding = await deps.embedder.embed_query(query)
        chunks = await asyncio.to_thread(
            deps.vector_store.similarity_search, owner_id, embedding, k, filters
        )
        return {"query": query, "chunks": [asdict(c) for c in chunks]}

    async def get_document(args: dict[str, Any], owner_id: str) -> dict[str, Any]:
        item_id = _item_id(args)
        if not item_id:
            return {"found": False, "error": "item_id is required"}
        document = await asyncio.to_thread(deps.knowledge.get_document, owner_id, item_id)
        if document is None:
            return {"found": False}
        return {"found": True, "document": document}

    async def summarize(args: dict[str, Any], owner_id: str) -> dict[str, Any]:
        text = str(args.get("text") or "")
        item_id = _item_id(args)
        if not text and item_id:
            document = await asyncio.to_thread(deps.knowledge.get_document, owner_id, item_id)
            text = document["text"] if document else ""
        if not text.strip():
            return {"summary": "No text found to summarize."}
        summary = await deps.llm.complete(SUMMARIZE_PROMPT.format(text=text), temperature=TEMPERATURE_SUMMARIZE)
        return {"summary": summary}

    async def draft_email(args: dict[str, Any], owner_id: str) -> dict[str, Any]:
        prompt = DRAFT_EMAIL_PROMPT.format(
            tone=str(args.get("tone") or "professional"),
            context=str(args.get("context") or ""),
        )
        draft = await deps.llm.complete(prompt, temperature=TEMPERATURE_DRAFT)
        return {"draft": draft}

    async def create_task(args: dict[str, Any], owner_id: str) -> dict[str, Any]:
        title = str(args.get("title") or "").strip()
        if not title:
            return {"created": False, "error": "title is required"}
        notes = str(args["notes"]) if args.get("notes") else None
        task = await asyncio.to_thread(deps.knowledge.create_task, owner_id, title, notes)
        logger.info(f"Created task {task.id} for {owner_id}")
        return {"created": True, "task": asdict(task)}

    tools = [
        AgentTool(ToolCatalogEntry("search_knowledge_base", "Searches vectorized knowledge items."),
                  search_knowledge_base),
        AgentTool(ToolCatalogEntry("get_document", "Fetches full text and metadata for a specific document by item_id."),
                  get_document),
        AgentTool(ToolCatalogEntry("summarize", "Summarizes given text or a document by item_id."),
                  summarize),
        AgentTool(ToolCatalogEntry("draft_email", "Drafts an email body but never sends anything."),
                  draft_email),
        AgentTool(ToolCatalogEntry("create_task", "Creates an internal task record.", requires_confirmation=True),
                  create_task),
    ]
    return {tool.name: tool for tool in tools}


def catalog(tools: dict[str, AgentTool]) -> list[ToolCatalogEntry]:
    return [tool.entry for tool in tools.values()]
