"""Plan, confirm, execute, synthesize: the agent's tool-calling loop.

Side-effecting tools only run when the caller echoes back the confirmation
key proposed on an earlier turn.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from ..llm.parsing import Fallback, Parsed, parse_json_payload
from ..llm.prompts import PLANNER_PROMPT, SYNTHESIS_PROMPT, TEMPERATURE_ANSWER, TEMPERATURE_PLAN
from ..models import AgentResult, ToolCallResult
from .tools import AgentDeps, AgentTool, build_tools, catalog

logger = logging.getLogger(__name__)

AWAITING_CONFIRMATION = "Awaiting user confirmation"


class AgentState(str, Enum):
    PLANNING = "planning"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"
    SYNTHESIZING = "synthesizing"
    DONE = "done"


@dataclass
class PlannedCall:
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    reason: str = ""


@dataclass
class AgentPlan:
    answer_intent: str
    tool_calls: list[PlannedCall] = field(default_factory=list)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def confirmation_key(tool_name: str, args: dict[str, Any]) -> str:
    """Deterministic key the caller must echo back to authorize a call."""
    return f"{tool_name}:{canonical_json(args)}"


def parse_planner_output(raw: str | None) -> Parsed | Fallback:
    """Parse the planner's JSON plan; anything unusable becomes a Fallback."""
    result = parse_json_payload(raw)
    if not isinstance(result, Parsed):
        return Fallback(raw_text=raw or "")
    value = result.value
    if not isinstance(value, dict) or not isinstance(value.get("toolCalls"), list):
        return Fallback(raw_text=raw or "")

    calls = []
    for call in value["toolCalls"]:
        if not isinstance(call, dict) or not isinstance(call.get("toolName"), str):
            continue
        args = call.get("args")
        calls.append(PlannedCall(
            tool_name=call["toolName"],
            args=args if isinstance(args, dict) else {},
            reason=str(call.get("reason") or ""),
        ))
    return Parsed(AgentPlan(answer_intent=str(value.get("answerIntent") or ""), tool_calls=calls))


def plan_or_fallback(result: Parsed | Fallback) -> AgentPlan:
    if isinstance(result, Parsed):
        return result.value
    return AgentPlan(answer_intent=result.raw_text, tool_calls=[])


def _enter(state: AgentState, owner_id: str) -> AgentState:
    logger.debug(f"Agent for {owner_id} -> {state.value}")
    return state


async def run_agent(
    deps: AgentDeps,
    owner_id: str,
    query: str,
    confirmed_actions: list[str] | None = None,
    tools: dict[str, AgentTool] | None = None,
) -> AgentResult:
    """Run one agent turn.

    Unknown tools are skipped. A confirmation-required call always adds its
    key to ``proposed_actions`` and only executes when that exact key is in
    ``confirmed_actions``; otherwise it gets a placeholder result.
    """
    tools = tools or build_tools(deps)
    confirmed = set(confirmed_actions or [])

    _enter(AgentState.PLANNING, owner_id)
    planner_prompt = PLANNER_PROMPT.format(
        catalog=json.dumps([entry.to_dict() for entry in catalog(tools)]),
        query=query,
    )
    raw_plan = await deps.llm.complete(planner_prompt, temperature=TEMPERATURE_PLAN)
    parsed = parse_planner_output(raw_plan)
    if isinstance(parsed, Fallback):
        logger.info("Planner output was not a usable plan; answering without tools")
    plan = plan_or_fallback(parsed)

    results: list[ToolCallResult] = []
    proposed: list[str] = []
    for call in plan.tool_calls:
        tool = tools.get(call.tool_name)
        if tool is None:
            logger.debug(f"Skipping unknown tool {call.tool_name}")
            continue

        if tool.entry.requires_confirmation:
            key = confirmation_key(call.tool_name, call.args)
            proposed.append(key)
            if key not in confirmed:
                _enter(AgentState.AWAITING_CONFIRMATION, owner_id)
                results.append(ToolCallResult(call.tool_name, call.args, AWAITING_CONFIRMATION))
                continue

        _enter(AgentState.EXECUTING, owner_id)
        try:
            output = await tool.run(call.args, owner_id)
        except Exception as e:
            logger.warning(f"Tool {call.tool_name} failed: {e}")
            output = {"error": str(e)}
        results.append(ToolCallResult(call.tool_name, call.args, output or {}))

    _enter(AgentState.SYNTHESIZING, owner_id)
    synthesis_prompt = SYNTHESIS_PROMPT.format(
        query=query,
        intent=plan.answer_intent,
        results=canonical_json([asdict(r) for r in results]),
    )
    response = await deps.llm.complete(synthesis_prompt, temperature=TEMPERATURE_ANSWER)
    _enter(AgentState.DONE, owner_id)
    return AgentResult(response=response, tool_results=results, proposed_actions=proposed)
