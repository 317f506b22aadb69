"""
Relay — Built-in Tools

The tools every dispatcher ships with: CRUD over agents and workflows,
run control, human interaction, and a plain HTTP call.

Handlers take ``(args, ctx)`` and return JSON-shaped values. Expected
failures (missing id, unknown record, cap exceeded) come back as
``{"error": ...}`` dicts so the calling agent can read and correct them.

Usage:
    dispatcher = ToolDispatcher()
    register_builtin_tools(dispatcher)
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

import httpx

from engine.state import Edge, Node, RunStatus
from engine.tools import ToolContext, ToolDispatcher

logger = logging.getLogger("relay.builtin_tools")

DEFAULT_MAX_TOOLS_PER_AGENT = 10
DEFAULT_HTTP_TIMEOUT = 30.0

WORKFLOW_ID_REQUIRED = "Workflow id is required"
WORKFLOW_NOT_FOUND = "Workflow not found"
AGENT_NOT_FOUND = "Agent not found"
RUN_NOT_FOUND = "Run not found"


def _setting(ctx: ToolContext, name: str, default: Any) -> Any:
    return getattr(ctx.settings, name, default) if ctx.settings is not None else default


def _no_store() -> dict[str, Any]:
    return {"error": "Store not available"}


def _no_coordinator() -> dict[str, Any]:
    return {"error": "Coordinator not available"}


# ---------------------------------------------------------------------------
# Identifier helpers
# ---------------------------------------------------------------------------

def resolve_workflow_id(args: dict[str, Any]) -> str | None:
    """
    Workflow id from ``id``, ``workflowId``, or the
    ``workflowIdentifierField="id"`` + ``workflowIdentifierValue`` pair.
    Name-based identification is not supported.
    """
    for key in ("id", "workflowId"):
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    if args.get("workflowIdentifierField") == "id":
        value = args.get("workflowIdentifierValue")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _run_id(args: dict[str, Any]) -> str | None:
    for key in ("id", "runId"):
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _agent_id(args: dict[str, Any]) -> str | None:
    for key in ("id", "agentId"):
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

def _agent_record(args: dict[str, Any], base: dict[str, Any] | None = None) -> dict[str, Any]:
    record = dict(base or {})
    if "name" in args:
        record["name"] = str(args["name"] or "")
    if "description" in args:
        record["description"] = str(args["description"] or "")
    if "systemPrompt" in args:
        record["system_prompt"] = str(args["systemPrompt"] or "")
    if "llmConfigId" in args:
        record["llm_config_id"] = args["llmConfigId"]
    if "toolIds" in args:
        tool_ids = args["toolIds"]
        record["tool_ids"] = [str(t) for t in tool_ids] if isinstance(tool_ids, list) else []
    record.setdefault("tool_ids", [])
    record.setdefault("system_prompt", "")
    record.setdefault("description", "")
    return record


def _tool_cap_error(count: int, cap: int) -> dict[str, Any] | None:
    if count <= cap:
        return None
    return {
        "error": (
            f"toolIds has {count} entries, which exceeds the maximum of {cap} tools per agent. "
            "Create multiple agents with focused tool sets and connect them in a workflow."
        ),
        "code": "TOOL_CAP_EXCEEDED",
        "maxToolsPerAgent": cap,
    }


def create_agent(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.store is None:
        return _no_store()
    name = args.get("name")
    if not isinstance(name, str) or not name.strip():
        return {"error": "Agent name is required"}
    tool_ids = args.get("toolIds")
    cap = int(_setting(ctx, "max_tools_per_agent", DEFAULT_MAX_TOOLS_PER_AGENT))
    if isinstance(tool_ids, list):
        cap_error = _tool_cap_error(len(tool_ids), cap)
        if cap_error:
            return cap_error

    now = time.time()
    record = _agent_record(args, {"id": str(uuid.uuid4()), "created_at": now})
    record["updated_at"] = now
    if not record["system_prompt"]:
        record["system_prompt"] = record["description"]
    ctx.store.put_agent(record)
    logger.info("Agent created: %s (%s)", record["id"], record["name"])
    return {"id": record["id"], "name": record["name"], "message": "Agent created"}


def get_agent(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.store is None:
        return _no_store()
    agent_id = _agent_id(args)
    if not agent_id:
        return {"error": "Agent id is required"}
    return ctx.store.get_agent(agent_id) or {"error": AGENT_NOT_FOUND}


def update_agent(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.store is None:
        return _no_store()
    agent_id = _agent_id(args)
    if not agent_id:
        return {"error": "Agent id is required"}
    existing = ctx.store.get_agent(agent_id)
    if existing is None:
        return {"error": AGENT_NOT_FOUND}
    tool_ids = args.get("toolIds")
    if isinstance(tool_ids, list):
        cap_error = _tool_cap_error(
            len(tool_ids), int(_setting(ctx, "max_tools_per_agent", DEFAULT_MAX_TOOLS_PER_AGENT)),
        )
        if cap_error:
            return cap_error
    record = _agent_record(args, existing)
    record["updated_at"] = time.time()
    ctx.store.put_agent(record)
    return {"id": agent_id, "message": "Agent updated"}


def list_agents(args: dict[str, Any], ctx: ToolContext) -> Any:
    if ctx.store is None:
        return _no_store()
    return [
        {"id": a["id"], "name": a.get("name", ""), "description": a.get("description", "")}
        for a in ctx.store.list_agents()
    ]


def delete_agent(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.store is None:
        return _no_store()
    agent_id = _agent_id(args)
    if not agent_id:
        return {"error": "Agent id is required"}
    if not ctx.store.delete_agent(agent_id):
        return {"error": AGENT_NOT_FOUND}
    return {"id": agent_id, "deleted": True}


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

def _normalize_nodes(raw: Any) -> tuple[list[dict[str, Any]], str | None]:
    if not isinstance(raw, list):
        return [], None
    nodes = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        node = Node.from_dict(item)
        if node.type == "agent" and not node.agent_id:
            return [], f"Node '{node.id}' is an agent node without an agent selected (parameters.agentId)"
        nodes.append(node.to_dict())
    return nodes, None


def _normalize_edges(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [
        Edge.from_dict(e, i).to_dict()
        for i, e in enumerate(raw) if isinstance(e, dict)
    ]


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return None


def _apply_loop_settings(record: dict[str, Any], args: dict[str, Any]) -> None:
    max_rounds = _positive_int(args.get("maxRounds", args.get("max_rounds")))
    if max_rounds is not None:
        record["max_rounds"] = max_rounds
    instruction = args.get("turnInstruction", args.get("turn_instruction"))
    if isinstance(instruction, str):
        record["turn_instruction"] = instruction.strip() or None


def create_workflow(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.store is None:
        return _no_store()
    name = args.get("name")
    if not isinstance(name, str) or not name.strip():
        return {"error": "Workflow name is required"}
    nodes, node_error = _normalize_nodes(args.get("nodes"))
    if node_error:
        return {"error": node_error}

    now = time.time()
    record = {
        "id": str(uuid.uuid4()),
        "name": name.strip(),
        "description": str(args.get("description") or ""),
        "execution_mode": str(args.get("executionMode") or "one_time"),
        "nodes": nodes,
        "edges": _normalize_edges(args.get("edges")),
        "max_rounds": None,
        "turn_instruction": None,
        "created_at": now,
        "updated_at": now,
    }
    _apply_loop_settings(record, args)
    ctx.store.put_workflow(record)
    logger.info("Workflow created: %s (%s)", record["id"], record["name"])
    return {"id": record["id"], "name": record["name"], "message": "Workflow created"}


def get_workflow(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.store is None:
        return _no_store()
    workflow_id = resolve_workflow_id(args)
    if not workflow_id:
        return {"error": WORKFLOW_ID_REQUIRED}
    return ctx.store.get_workflow(workflow_id) or {"error": WORKFLOW_NOT_FOUND}


def update_workflow(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.store is None:
        return _no_store()
    workflow_id = resolve_workflow_id(args)
    if not workflow_id:
        return {"error": f"{WORKFLOW_ID_REQUIRED} (pass id or workflowId; names are not accepted)"}
    record = ctx.store.get_workflow(workflow_id)
    if record is None:
        return {"error": WORKFLOW_NOT_FOUND}

    if isinstance(args.get("name"), str) and args["name"].strip():
        record["name"] = args["name"].strip()
    if isinstance(args.get("description"), str):
        record["description"] = args["description"]
    if args.get("executionMode"):
        record["execution_mode"] = str(args["executionMode"])
    if "nodes" in args:
        nodes, node_error = _normalize_nodes(args.get("nodes"))
        if node_error:
            return {"error": node_error}
        record["nodes"] = nodes
    if "edges" in args:
        record["edges"] = _normalize_edges(args.get("edges"))
    _apply_loop_settings(record, args)
    record["updated_at"] = time.time()
    ctx.store.put_workflow(record)
    return {
        "id": workflow_id,
        "message": "Workflow updated",
        "nodes": len(record.get("nodes", [])),
        "edges": len(record.get("edges", [])),
    }


def add_workflow_edges(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.store is None:
        return _no_store()
    workflow_id = resolve_workflow_id(args)
    if not workflow_id:
        return {"error": WORKFLOW_ID_REQUIRED}
    record = ctx.store.get_workflow(workflow_id)
    if record is None:
        return {"error": WORKFLOW_NOT_FOUND}

    new_nodes, node_error = _normalize_nodes(args.get("nodes"))
    if node_error:
        return {"error": node_error}
    existing_ids = {n["id"] for n in record.get("nodes", [])}
    nodes = list(record.get("nodes", []))
    nodes.extend(n for n in new_nodes if n["id"] not in existing_ids)

    edges = list(record.get("edges", []))
    seen = {(e["source"], e["target"]) for e in edges}
    raw_edges = args.get("edges") if isinstance(args.get("edges"), list) else []
    for raw in raw_edges:
        if not isinstance(raw, dict):
            continue
        edge = Edge.from_dict(raw, len(edges)).to_dict()
        if (edge["source"], edge["target"]) not in seen:
            edges.append(edge)
            seen.add((edge["source"], edge["target"]))

    record["nodes"] = nodes
    record["edges"] = edges
    _apply_loop_settings(record, args)
    record["updated_at"] = time.time()
    ctx.store.put_workflow(record)
    return {"id": workflow_id, "message": "Edges added", "nodes": len(nodes), "edges": len(edges)}


def list_workflows(args: dict[str, Any], ctx: ToolContext) -> Any:
    if ctx.store is None:
        return _no_store()
    return [
        {"id": w["id"], "name": w.get("name", ""), "nodes": len(w.get("nodes", []))}
        for w in ctx.store.list_workflows()
    ]


def delete_workflow(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.store is None:
        return _no_store()
    workflow_id = resolve_workflow_id(args)
    if not workflow_id:
        return {"error": WORKFLOW_ID_REQUIRED}
    if not ctx.store.delete_workflow(workflow_id):
        return {"error": WORKFLOW_NOT_FOUND}
    return {"id": workflow_id, "deleted": True}


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

def _run_result(run) -> dict[str, Any]:
    public = run.to_public_dict()
    return {
        "id": run.id,
        "workflowId": run.graph_id,
        "status": public["status"],
        "output": public["output"],
        "trail": public["trail"],
    }


def execute_workflow(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.coordinator is None:
        return _no_coordinator()
    workflow_id = resolve_workflow_id(args)
    if not workflow_id:
        return {"error": WORKFLOW_ID_REQUIRED}
    if ctx.store is not None and ctx.store.get_workflow(workflow_id) is None:
        return {"error": WORKFLOW_NOT_FOUND}

    try:
        run_id = ctx.coordinator.start(
            workflow_id,
            initial_input=args.get("input"),
            background=bool(args.get("background", False)),
        )
    except LookupError:
        return {"error": WORKFLOW_NOT_FOUND}
    run = ctx.coordinator.get(run_id)
    return _run_result(run)


def get_run(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.coordinator is None:
        return _no_coordinator()
    run_id = _run_id(args)
    if not run_id:
        return {"error": "Run id is required"}
    run = ctx.coordinator.get(run_id)
    if run is None:
        return {"error": RUN_NOT_FOUND}
    return _run_result(run)


def list_runs(args: dict[str, Any], ctx: ToolContext) -> Any:
    if ctx.coordinator is None:
        return _no_coordinator()
    status = args.get("status")
    if status is not None:
        try:
            status = RunStatus(status)
        except ValueError:
            return {"error": f"Unknown run status: {status}"}
    limit = _positive_int(args.get("limit")) or 20
    runs = ctx.coordinator.list_runs(
        graph_id=resolve_workflow_id({"workflowId": args.get("workflowId")}),
        status=status,
        limit=limit,
    )
    return [
        {
            "id": r.id,
            "workflowId": r.graph_id,
            "status": r.status.value,
            "started_at": r.started_at,
            "finished_at": r.finished_at,
            "steps": len(r.trail),
        }
        for r in runs
    ]


def respond_to_run(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.coordinator is None:
        return _no_coordinator()
    run_id = _run_id(args)
    if not run_id:
        return {"error": "Run id is required"}
    return ctx.coordinator.respond(run_id, args.get("response"))


def cancel_run(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.coordinator is None:
        return _no_coordinator()
    run_id = _run_id(args)
    if not run_id:
        return {"error": "Run id is required"}
    return ctx.coordinator.cancel(run_id)


def retry_run(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if ctx.coordinator is None:
        return _no_coordinator()
    run_id = _run_id(args)
    if not run_id:
        return {"error": "Run id is required"}
    return ctx.coordinator.retry(run_id)


# ---------------------------------------------------------------------------
# Human interaction
# ---------------------------------------------------------------------------

def _options(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(o) for o in value if o is not None and str(o).strip()]


def ask_user(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    question = str(args.get("question") or args.get("message") or "").strip()
    if not question:
        return {"error": "question is required"}
    return {"waitingForUser": True, "question": question, "options": _options(args.get("options"))}


def ask_credentials(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    key = str(args.get("credentialKey") or args.get("key") or "").strip()
    if not key:
        return {"error": "credentialKey is required"}
    question = str(args.get("question") or f"Please provide the credential '{key}'.")
    return {"waitingForUser": True, "credentialKey": key, "question": question}


def request_user_help(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    message = str(args.get("message") or args.get("question") or "").strip()
    if not message:
        return {"error": "message is required"}
    result = {"waitingForUser": True, "question": message, "options": _options(args.get("options"))}
    if args.get("reason"):
        result["reason"] = str(args["reason"])
    return result


def format_response(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    result: dict[str, Any] = {"formatted": True, "summary": str(args.get("summary") or "")}
    needs_input = args.get("needsInput")
    if isinstance(needs_input, str) and needs_input.strip():
        result["needsInput"] = needs_input.strip()
        result["options"] = _options(args.get("options"))
    return result


# ---------------------------------------------------------------------------
# External
# ---------------------------------------------------------------------------

def http_request(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    url = args.get("url")
    if not isinstance(url, str) or not url.strip():
        return {"error": "url is required"}
    method = str(args.get("method") or "GET").upper()
    headers = args.get("headers") if isinstance(args.get("headers"), dict) else None
    body = args.get("body")
    timeout = float(_setting(ctx, "http_timeout_seconds", DEFAULT_HTTP_TIMEOUT))

    request_kwargs: dict[str, Any] = {"headers": headers}
    if isinstance(body, (dict, list)):
        request_kwargs["json"] = body
    elif body is not None:
        request_kwargs["content"] = str(body)

    try:
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            response = client.request(method, url, **request_kwargs)
    except httpx.HTTPError as e:
        logger.warning("http_request %s %s failed: %s", method, url, e)
        return {"error": f"{type(e).__name__}: {e}", "url": url}

    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            parsed: Any = response.json()
        except ValueError:
            parsed = response.text
    else:
        parsed = response.text
    return {
        "statusCode": response.status_code,
        "headers": dict(response.headers),
        "body": parsed,
    }


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def _obj(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required or []}


_STR = {"type": "string"}
_ARR = {"type": "array"}
_NUM = {"type": "number"}

_WORKFLOW_ID_PROPS = {
    "id": {"type": "string", "description": "Workflow ID"},
    "workflowId": {"type": "string", "description": "Alias of id"},
}

BUILTIN_TOOLS: list[tuple[str, Any, str, dict[str, Any]]] = [
    ("create_agent", create_agent,
     "Create an agent (name, description, systemPrompt, llmConfigId, toolIds; at most 10 toolIds).",
     _obj({"name": _STR, "description": _STR, "systemPrompt": _STR,
           "llmConfigId": _STR, "toolIds": _ARR}, ["name"])),
    ("get_agent", get_agent, "Get an agent by id.", _obj({"id": _STR}, ["id"])),
    ("update_agent", update_agent, "Update an agent's fields.",
     _obj({"id": _STR, "name": _STR, "description": _STR, "systemPrompt": _STR,
           "llmConfigId": _STR, "toolIds": _ARR}, ["id"])),
    ("list_agents", list_agents, "List all agents.", _obj({})),
    ("delete_agent", delete_agent, "Delete an agent by id.", _obj({"id": _STR}, ["id"])),
    ("create_workflow", create_workflow, "Create a workflow; wire it with update_workflow.",
     _obj({"name": _STR, "executionMode": _STR, "nodes": _ARR, "edges": _ARR,
           "maxRounds": _NUM, "turnInstruction": _STR}, ["name"])),
    ("get_workflow", get_workflow, "Get a workflow with its nodes and edges.",
     _obj(dict(_WORKFLOW_ID_PROPS))),
    ("update_workflow", update_workflow,
     "Replace a workflow's nodes/edges and set maxRounds when edges form a loop.",
     _obj({**_WORKFLOW_ID_PROPS, "name": _STR, "nodes": _ARR, "edges": _ARR,
           "maxRounds": _NUM, "turnInstruction": _STR})),
    ("add_workflow_edges", add_workflow_edges,
     "Add edges (and optionally nodes) to a workflow without replacing its graph.",
     _obj({**_WORKFLOW_ID_PROPS, "edges": _ARR, "nodes": _ARR,
           "maxRounds": _NUM, "turnInstruction": _STR}, ["edges"])),
    ("list_workflows", list_workflows, "List all workflows.", _obj({})),
    ("delete_workflow", delete_workflow, "Delete a workflow by id.", _obj(dict(_WORKFLOW_ID_PROPS))),
    ("execute_workflow", execute_workflow,
     "Run a workflow. Returns run id, status, output and the per-step trail.",
     _obj({**_WORKFLOW_ID_PROPS, "input": {}})),
    ("get_run", get_run, "Get a run by id, including its trail.", _obj({"id": _STR}, ["id"])),
    ("list_runs", list_runs, "List recent runs.",
     _obj({"workflowId": _STR, "status": _STR, "limit": _NUM})),
    ("respond_to_run", respond_to_run, "Answer a run that is waiting for user input.",
     _obj({"id": _STR, "response": {}}, ["id", "response"])),
    ("cancel_run", cancel_run, "Cancel a running or waiting run.", _obj({"id": _STR}, ["id"])),
    ("retry_run", retry_run, "Start a new run retrying a failed one.", _obj({"id": _STR}, ["id"])),
    ("ask_user", ask_user, "Ask the user a question and wait for the answer.",
     _obj({"question": _STR, "options": _ARR}, ["question"])),
    ("ask_credentials", ask_credentials, "Ask the user for a credential and wait.",
     _obj({"credentialKey": _STR, "question": _STR}, ["credentialKey"])),
    ("request_user_help", request_user_help, "Ask the user for help when stuck.",
     _obj({"message": _STR, "reason": _STR, "options": _ARR}, ["message"])),
    ("format_response", format_response,
     "Format the final answer; set needsInput to ask the user something.",
     _obj({"summary": _STR, "needsInput": _STR, "options": _ARR})),
    ("http_request", http_request, "Make an HTTP request.",
     _obj({"url": _STR, "method": _STR, "headers": {"type": "object"}, "body": {}}, ["url"])),
]


def register_builtin_tools(dispatcher: ToolDispatcher) -> ToolDispatcher:
    """Register every built-in tool on the dispatcher and return it."""
    for name, fn, description, parameters in BUILTIN_TOOLS:
        dispatcher.register(name, fn, description=description, parameters=parameters)
    return dispatcher
