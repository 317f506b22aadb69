"""
Relay - Workflow Graph and Trail State

Plain dataclasses for the agent graph a run executes, the trail it
accumulates, and the resume cursor persisted while it waits for a human.
Everything here round-trips through JSON (to_dict / from_dict) because
a paused run's continuation is stored, not held in memory.
"""

from __future__ import annotations

import copy
import enum
import json
from dataclasses import dataclass, field
from typing import Any

RUN_CANCELLED_MESSAGE = "Run cancelled by user"


class RunStatus(str, enum.Enum):
    """Lifecycle states for a run."""
    RUNNING = "running"
    WAITING_FOR_USER = "waiting_for_user"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class GraphConfigError(Exception):
    """Raised when a graph or node cannot be executed as configured."""
    pass


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

@dataclass
class Node:
    id: str
    type: str = "agent"
    parameters: dict[str, Any] = field(default_factory=dict)
    position: Any = None

    @property
    def agent_id(self) -> str:
        return str(self.parameters.get("agentId") or "")

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Node:
        """Accepts canvas nodes and LLM-style nodes (top-level agentId, config)."""
        params = data.get("parameters")
        if not isinstance(params, dict):
            params = data.get("config") if isinstance(data.get("config"), dict) else {}
        params = dict(params)
        if data.get("agentId") and not params.get("agentId"):
            params["agentId"] = data["agentId"]
        return Node(
            id=str(data.get("id", "")),
            type=str(data.get("type") or "agent"),
            parameters=params,
            position=data.get("position"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "position": self.position,
            "parameters": copy.deepcopy(self.parameters),
        }


@dataclass
class Edge:
    """
    Hands a node's output to ``target``. An optional ``condition``
    (``{"type": "message_type" | "content_contains", "value": ...}``)
    makes the edge conditional; see ``matches``.
    """
    id: str
    source: str
    target: str
    condition: dict[str, Any] | None = None

    @staticmethod
    def from_dict(data: dict[str, Any], index: int = 0) -> Edge:
        """Accepts both {source, target} and {from, to}."""
        condition = data.get("condition")
        return Edge(
            id=str(data.get("id") or f"e{index + 1}"),
            source=str(data.get("source") or data.get("from") or ""),
            target=str(data.get("target") or data.get("to") or ""),
            condition=dict(condition) if isinstance(condition, dict) else None,
        )

    def matches(self, output: Any) -> bool:
        """
        Whether ``output`` satisfies this edge's condition.

        ``message_type`` matches an output equal to the value, or a mapping
        whose ``type`` is the value. ``content_contains`` is a
        case-insensitive substring test on the output's text. Edges without
        a condition, or with an unknown type, always match.
        """
        if not self.condition:
            return True
        kind = self.condition.get("type")
        value = str(self.condition.get("value") or "")
        if isinstance(output, str):
            content = output
        else:
            content = json.dumps(output if output is not None else "", default=str)
        if kind == "message_type":
            return content == value or (isinstance(output, dict) and output.get("type") == value)
        if kind == "content_contains":
            return value.lower() in content.lower()
        return True

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "source": self.source, "target": self.target}
        if self.condition:
            data["condition"] = copy.deepcopy(self.condition)
        return data


@dataclass
class Graph:
    """A workflow: agent nodes plus the edges that hand output from one to the next."""
    id: str
    name: str = ""
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    max_rounds: int | None = None
    turn_instruction: str | None = None
    description: str = ""

    def node(self, node_id: str) -> Node | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Graph:
        nodes = data.get("nodes") if isinstance(data.get("nodes"), list) else []
        edges = data.get("edges") if isinstance(data.get("edges"), list) else []
        max_rounds = data.get("max_rounds", data.get("maxRounds"))
        if not isinstance(max_rounds, int) or isinstance(max_rounds, bool) or max_rounds <= 0:
            max_rounds = None
        return Graph(
            id=str(data.get("id", "")),
            name=str(data.get("name") or ""),
            nodes=[Node.from_dict(n) for n in nodes if isinstance(n, dict)],
            edges=[Edge.from_dict(e, i) for i, e in enumerate(edges) if isinstance(e, dict)],
            max_rounds=max_rounds,
            turn_instruction=data.get("turn_instruction", data.get("turnInstruction")),
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "max_rounds": self.max_rounds,
            "turn_instruction": self.turn_instruction,
        }


@dataclass
class GraphIssue:
    """A configuration problem found in a graph."""
    kind: str  # duplicate_node | dangling_edge | empty_graph
    message: str
    edge_id: str = ""
    node_id: str = ""
    fatal: bool = False


def validate_graph(graph: Graph) -> list[GraphIssue]:
    """
    Check node id uniqueness and edge endpoints.

    Duplicate node ids and an empty graph are fatal. A dangling edge is
    not: the runner drops it from routing and reports it on the step of
    its source node.
    """
    issues: list[GraphIssue] = []
    if not graph.nodes:
        issues.append(GraphIssue("empty_graph", "Workflow has no nodes", fatal=True))
        return issues

    seen: set[str] = set()
    for n in graph.nodes:
        if not n.id:
            issues.append(GraphIssue("duplicate_node", "Node without an id", fatal=True))
        elif n.id in seen:
            issues.append(GraphIssue(
                "duplicate_node", f"Duplicate node id '{n.id}'", node_id=n.id, fatal=True,
            ))
        seen.add(n.id)

    for e in graph.edges:
        missing = [end for end in (e.source, e.target) if end not in seen]
        if missing:
            issues.append(GraphIssue(
                "dangling_edge",
                f"Edge '{e.id}' references unknown node(s): {', '.join(repr(m) for m in missing)}",
                edge_id=e.id,
                node_id=e.source if e.source in seen else "",
            ))
    return issues


# ---------------------------------------------------------------------------
# Trail
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TrailStep:
    """One node turn. Immutable once appended to a run's trail."""
    order: int
    round: int
    node_id: str
    agent_id: str = ""
    agent_name: str = ""
    input: Any = None
    output: Any = None
    sent_to_node_id: str | None = None
    error: str | None = None
    tool_calls: tuple = ()
    waiting_for_user: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "round": self.round,
            "node_id": self.node_id,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "input": copy.deepcopy(self.input),
            "output": copy.deepcopy(self.output),
            "sent_to_node_id": self.sent_to_node_id,
            "error": self.error,
            "tool_calls": copy.deepcopy(list(self.tool_calls)),
            "waiting_for_user": self.waiting_for_user,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> TrailStep:
        return TrailStep(
            order=int(data.get("order", 0)),
            round=int(data.get("round", 0)),
            node_id=str(data.get("node_id", "")),
            agent_id=str(data.get("agent_id") or ""),
            agent_name=str(data.get("agent_name") or ""),
            input=data.get("input"),
            output=data.get("output"),
            sent_to_node_id=data.get("sent_to_node_id"),
            error=data.get("error"),
            tool_calls=tuple(data.get("tool_calls") or ()),
            waiting_for_user=bool(data.get("waiting_for_user", False)),
        )


# ---------------------------------------------------------------------------
# Resume cursor
# ---------------------------------------------------------------------------

@dataclass
class ResumeCursor:
    """
    Everything needed to continue a run exactly where it stopped.

    ``queue`` holds the ``[node_id, input]`` pairs still to run in the
    current round; its head is the node that paused. ``carry`` holds the
    pairs scheduled for the next round.
    """
    round: int = 0
    queue: list[list[Any]] = field(default_factory=list)
    carry: list[list[Any]] = field(default_factory=list)
    visited: list[str] = field(default_factory=list)
    last_output: Any = None
    initial_input: Any = None
    prompt: dict[str, Any] | None = None
    user_response: Any = None
    has_user_response: bool = False

    @property
    def paused_node_id(self) -> str | None:
        return self.queue[0][0] if self.queue else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "round": self.round,
            "queue": copy.deepcopy(self.queue),
            "carry": copy.deepcopy(self.carry),
            "visited": list(self.visited),
            "last_output": copy.deepcopy(self.last_output),
            "initial_input": copy.deepcopy(self.initial_input),
            "prompt": copy.deepcopy(self.prompt),
            "user_response": copy.deepcopy(self.user_response),
            "has_user_response": self.has_user_response,
        }

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> ResumeCursor | None:
        if not data:
            return None
        return ResumeCursor(
            round=int(data.get("round", 0)),
            queue=[list(p) for p in data.get("queue") or []],
            carry=[list(p) for p in data.get("carry") or []],
            visited=list(data.get("visited") or []),
            last_output=data.get("last_output"),
            initial_input=data.get("initial_input"),
            prompt=data.get("prompt"),
            user_response=data.get("user_response"),
            has_user_response=bool(data.get("has_user_response", False)),
        )


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

@dataclass
class AgentDefinition:
    """The slice of an agent record a node turn needs."""
    id: str
    name: str = ""
    description: str = ""
    system_prompt: str = ""
    tool_ids: list[str] = field(default_factory=list)
    llm_config_id: str | None = None

    @staticmethod
    def from_dict(data: dict[str, Any]) -> AgentDefinition:
        tool_ids = data.get("tool_ids", data.get("toolIds"))
        return AgentDefinition(
            id=str(data.get("id", "")),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            system_prompt=str(data.get("system_prompt", data.get("systemPrompt")) or ""),
            tool_ids=[str(t) for t in tool_ids] if isinstance(tool_ids, list) else [],
            llm_config_id=data.get("llm_config_id", data.get("llmConfigId")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "system_prompt": self.system_prompt,
            "tool_ids": list(self.tool_ids),
            "llm_config_id": self.llm_config_id,
        }
