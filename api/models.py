"""
Relay — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by server, worker, and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any


@dataclass
class StartRunRequest:
    """POST /v1/runs request body."""
    workflow_id: str
    input: Any = None
    background: bool = False

    @staticmethod
    def from_body(body: dict[str, Any]) -> StartRunRequest:
        return StartRunRequest(
            workflow_id=body.get("workflow_id") or body.get("workflowId") or "",
            input=body.get("input"),
            background=bool(body.get("background", False)),
        )

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.workflow_id or not isinstance(self.workflow_id, str):
            errors.append("workflow_id is required and must be a string")
        return errors


@dataclass
class RunAccepted:
    """POST /v1/runs response."""
    run_id: str
    status: str
    background: bool
    output: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RespondRequest:
    """POST /v1/runs/{id}/respond body."""
    response: Any = None
    present: bool = False

    @staticmethod
    def from_body(body: dict[str, Any]) -> RespondRequest:
        return RespondRequest(response=body.get("response"), present="response" in body)

    def validate(self) -> list[str]:
        errors = []
        if not self.present:
            errors.append("response is required")
        return errors


@dataclass
class CreateWorkflowRequest:
    """POST /v1/workflows body. Node and edge dicts are passed through to Graph.from_dict."""
    name: str
    nodes: list[dict[str, Any]] = field(default_factory=list)
    edges: list[dict[str, Any]] = field(default_factory=list)
    id: str = ""
    description: str = ""
    max_rounds: int | None = None
    turn_instruction: str = ""

    @staticmethod
    def from_body(body: dict[str, Any]) -> CreateWorkflowRequest:
        return CreateWorkflowRequest(
            name=body.get("name", ""),
            nodes=body.get("nodes") or [],
            edges=body.get("edges") or [],
            id=body.get("id", ""),
            description=body.get("description", ""),
            max_rounds=body.get("max_rounds", body.get("maxRounds")),
            turn_instruction=body.get("turn_instruction", body.get("turnInstruction", "")),
        )

    def validate(self) -> list[str]:
        errors = []
        if not self.name or not isinstance(self.name, str):
            errors.append("name is required and must be a string")
        if not isinstance(self.nodes, list) or not self.nodes:
            errors.append("nodes is required and must be a non-empty list")
        if not isinstance(self.edges, list):
            errors.append("edges must be a list")
        if self.max_rounds is not None and (
            not isinstance(self.max_rounds, int) or self.max_rounds < 1
        ):
            errors.append("max_rounds must be a positive integer")
        return errors

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        if record["max_rounds"] is None:
            record.pop("max_rounds")
        return record


@dataclass
class QueueStatus:
    """GET /v1/queue response."""
    queued: int
    running: int
    completed: int
    failed: int
    concurrency: int
    jobs: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
