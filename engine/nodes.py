"""
Relay — Node Turns

One turn of one graph node. Two node types:

  agent   An LLM decision loop. The agent's system prompt, the graph's
          turn instruction and the node input go in; the model may call
          tools (each call's arguments are resolved against earlier
          results in the run, dispatched, classified, and fed back) until
          it answers without tool calls.

  tool    A single dispatcher call with fixed (resolved) arguments.

A turn never raises for a tool that merely failed: the failure is
recorded on the turn's ``error`` and the run moves on. It raises
GraphConfigError when the node cannot run at all (unknown agent,
unknown node type, no LLM), and lets anything else propagate to the
stepper, which fails the run.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from engine.outcomes import (
    ASK_USER_TOOLS,
    FORMAT_RESPONSE_TOOL,
    failure_message,
    interactive_prompt,
    is_failure,
)
from engine.references import find_placeholders, resolve_references
from engine.state import AgentDefinition, GraphConfigError, Node
from engine.tools import ToolContext, ToolDispatcher

logger = logging.getLogger("relay.nodes")

DEFAULT_MAX_TOOL_ROUNDS = 20

# Always offered to agents so any of them can stop and ask the user.
INTERACTION_TOOLS = tuple(sorted(ASK_USER_TOOLS)) + (FORMAT_RESPONSE_TOOL,)


class LLMUnavailableError(GraphConfigError):
    """An agent node ran but no call_llm capability was configured."""
    pass


# ---------------------------------------------------------------------------
# Turn inputs and outputs
# ---------------------------------------------------------------------------

@dataclass
class TurnContext:
    """Everything a node turn needs from its run."""
    run_id: str
    dispatcher: ToolDispatcher
    agents: dict[str, dict[str, Any]] = field(default_factory=dict)
    # Shared with the run: {name, args, result} entries, appended in place
    tool_results: list[dict[str, Any]] = field(default_factory=list)
    call_llm: Callable[[dict[str, Any]], Any] | None = None
    turn_instruction: str | None = None
    store: Any = None
    coordinator: Any = None
    settings: Any = None
    run_logger: Any = None

    @property
    def max_tool_rounds(self) -> int:
        value = getattr(self.settings, "max_tool_rounds", None)
        return int(value) if value else DEFAULT_MAX_TOOL_ROUNDS

    def tool_context(self, node_id: str) -> ToolContext:
        return ToolContext(
            store=self.store,
            coordinator=self.coordinator,
            call_llm=self.call_llm,
            run_id=self.run_id,
            node_id=node_id,
            settings=self.settings,
        )


@dataclass
class TurnResult:
    output: Any = None
    agent_id: str = ""
    agent_name: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    # {question, options} when a tool asked the run to wait for a human
    prompt: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------

def _parse_arguments(raw: Any) -> tuple[dict[str, Any], str | None]:
    if raw is None or raw == "":
        return {}, None
    if isinstance(raw, dict):
        return raw, None
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            return {}, f"Invalid JSON arguments: {e}"
        if isinstance(parsed, dict):
            return parsed, None
        return {"input": parsed}, None
    return {"input": raw}, None


def normalize_tool_calls(response: Any) -> list[dict[str, Any]]:
    """
    Extract ``[{id, name, arguments}]`` from an LLM response.

    Accepts ``tool_calls`` or ``toolCalls``, and per call either
    ``arguments`` (JSON string or mapping), LangChain-style ``args``,
    or an OpenAI-style nested ``function`` object.
    """
    if not isinstance(response, dict):
        return []
    raw_calls = response.get("tool_calls") or response.get("toolCalls") or []
    calls = []
    for i, raw in enumerate(raw_calls):
        if not isinstance(raw, dict):
            continue
        fn = raw.get("function") if isinstance(raw.get("function"), dict) else {}
        name = raw.get("name") or fn.get("name")
        if not name:
            continue
        if "arguments" in raw:
            arguments = raw["arguments"]
        elif "args" in raw:
            arguments = raw["args"]
        else:
            arguments = fn.get("arguments")
        calls.append({"id": str(raw.get("id") or f"call_{i}"), "name": str(name), "arguments": arguments})
    return calls


def _response_content(response: Any) -> str:
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        content = response.get("content")
        if content is None:
            return ""
        return content if isinstance(content, str) else json.dumps(content, default=str)
    return "" if response is None else str(response)


def _input_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, default=str)


def dispatch_tool_call(
    tctx: TurnContext,
    node_id: str,
    name: str,
    raw_arguments: Any,
    allowed: set[str] | None = None,
) -> dict[str, Any]:
    """
    Resolve, dispatch and classify one tool call.

    Returns the trail record ``{name, args, result, failed}`` and appends
    ``{name, args, result}`` to the run's tool results.
    """
    args, parse_error = _parse_arguments(raw_arguments)
    args = resolve_references(args, tctx.tool_results)
    unresolved = find_placeholders(args)
    if unresolved:
        logger.warning("Run %s: %s called with unresolved placeholders %s",
                       tctx.run_id, name, unresolved, extra={"run_id": tctx.run_id})

    start = time.time()
    if parse_error:
        result: Any = {"error": parse_error}
    elif allowed is not None and name not in allowed:
        result = {"error": f"Tool '{name}' is not available to this agent"}
    else:
        result = tctx.dispatcher.execute(name, args, tctx.tool_context(node_id))
    elapsed_ms = (time.time() - start) * 1000

    failed = is_failure(result)
    if tctx.run_logger is not None:
        tctx.run_logger.on_tool_call(node_id, name, failed, elapsed_ms, args=args, result=result)
    tctx.tool_results.append({"name": name, "args": args, "result": result})
    return {"name": name, "args": args, "result": result, "failed": failed}


def _turn_error(tool_calls: list[dict[str, Any]]) -> str | None:
    failures = [
        f"{c['name']}: {failure_message(c['result'])}" for c in tool_calls if c.get("failed")
    ]
    return "; ".join(failures) or None


# ---------------------------------------------------------------------------
# Agent node
# ---------------------------------------------------------------------------

def _load_agent(node: Node, tctx: TurnContext) -> AgentDefinition:
    agent_id = node.agent_id
    if not agent_id:
        raise GraphConfigError(f"Node '{node.id}' has no agent selected")
    record = tctx.agents.get(agent_id)
    if record is None and tctx.store is not None:
        record = tctx.store.get_agent(agent_id)
    if record is None:
        raise GraphConfigError(f"Agent '{agent_id}' not found for node '{node.id}'")
    return AgentDefinition.from_dict(record)


def build_messages(
    agent: AgentDefinition,
    node_input: Any,
    turn_instruction: str | None = None,
    prior_prompt: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    system_prompt = agent.system_prompt or agent.description
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    if turn_instruction:
        messages.append({"role": "system", "content": turn_instruction})
    if prior_prompt:
        content = (
            f"You asked the user: {prior_prompt.get('question', '')}\n"
            f"The user replied: {_input_text(node_input)}"
        )
    else:
        content = _input_text(node_input)
    messages.append({"role": "user", "content": content})
    return messages


def run_agent_turn(
    node: Node,
    node_input: Any,
    tctx: TurnContext,
    prior_prompt: dict[str, Any] | None = None,
) -> TurnResult:
    agent = _load_agent(node, tctx)
    if tctx.call_llm is None:
        raise LLMUnavailableError(f"No LLM configured for agent node '{node.id}'")

    offered = [t for t in agent.tool_ids if tctx.dispatcher.has_tool(t)]
    offered += [t for t in INTERACTION_TOOLS if t not in offered and tctx.dispatcher.has_tool(t)]
    allowed = set(offered)
    tools = tctx.dispatcher.schemas(offered)

    messages = build_messages(agent, node_input, tctx.turn_instruction, prior_prompt)
    result = TurnResult(agent_id=agent.id, agent_name=agent.name)
    content = ""

    for _ in range(tctx.max_tool_rounds):
        response = tctx.call_llm({
            "messages": list(messages),
            "tools": tools,
            "llm_config_id": agent.llm_config_id,
        })
        content = _response_content(response)
        calls = normalize_tool_calls(response)
        if not calls:
            result.output = content
            break

        messages.append({
            "role": "assistant",
            "content": content,
            "tool_calls": [
                {"id": c["id"], "name": c["name"], "arguments": c["arguments"]} for c in calls
            ],
        })
        for call in calls:
            record = dispatch_tool_call(tctx, node.id, call["name"], call["arguments"], allowed)
            result.tool_calls.append(record)
            prompt = interactive_prompt(call["name"], record["result"])
            if prompt is not None:
                result.prompt = prompt
                result.output = prompt
                result.error = _turn_error(result.tool_calls)
                return result
            messages.append({
                "role": "tool",
                "tool_call_id": call["id"],
                "name": call["name"],
                "content": json.dumps(record["result"], default=str),
            })
    else:
        result.output = content
        result.error = f"Agent exceeded {tctx.max_tool_rounds} tool rounds without a final answer"
        logger.warning("Node %s hit the tool round limit", node.id, extra={"run_id": tctx.run_id})

    if not result.output:
        for call in reversed(result.tool_calls):
            if call["name"] == FORMAT_RESPONSE_TOOL and isinstance(call["result"], dict):
                summary = call["result"].get("summary")
                if summary:
                    result.output = summary
                    break

    tool_error = _turn_error(result.tool_calls)
    if tool_error:
        result.error = f"{result.error}; {tool_error}" if result.error else tool_error
    return result


# ---------------------------------------------------------------------------
# Tool node
# ---------------------------------------------------------------------------

def run_tool_turn(
    node: Node,
    node_input: Any,
    tctx: TurnContext,
    prior_prompt: dict[str, Any] | None = None,
) -> TurnResult:
    tool_name = node.parameters.get("toolName") or node.parameters.get("toolId")
    if not tool_name:
        raise GraphConfigError(f"Tool node '{node.id}' has no toolName")
    if prior_prompt is not None:
        # The user's answer is this node's result.
        return TurnResult(output=node_input)

    raw_args = node.parameters.get("args")
    args = raw_args if isinstance(raw_args, dict) else {"input": node_input}
    record = dispatch_tool_call(tctx, node.id, str(tool_name), args)
    result = TurnResult(output=record["result"], tool_calls=[record])
    result.prompt = interactive_prompt(record["name"], record["result"])
    if result.prompt is not None:
        result.output = result.prompt
    result.error = _turn_error(result.tool_calls)
    return result


NODE_RUNNERS = {
    "agent": run_agent_turn,
    "tool": run_tool_turn,
}


def run_node_turn(
    node: Node,
    node_input: Any,
    tctx: TurnContext,
    prior_prompt: dict[str, Any] | None = None,
) -> TurnResult:
    """Run one turn of ``node``. ``prior_prompt`` is set when resuming after a pause."""
    runner = NODE_RUNNERS.get(node.type)
    if runner is None:
        raise GraphConfigError(f"Unknown node type '{node.type}' on node '{node.id}'")
    return runner(node, node_input, tctx, prior_prompt)
