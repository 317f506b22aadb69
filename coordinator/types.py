"""
Relay — Coordinator Type Definitions

Run records, queue jobs and execution events. Graph, trail and cursor
types live in engine.state; they are re-exported here for callers that
only deal with the coordinator.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from engine.state import (
    RUN_CANCELLED_MESSAGE,
    TERMINAL_STATUSES,
    ResumeCursor,
    RunStatus,
    TrailStep,
)

__all__ = [
    "RUN_CANCELLED_MESSAGE", "TERMINAL_STATUSES",
    "RunStatus", "Run", "JobType", "JobStatus", "WorkflowJob",
    "EventType", "ExecutionEvent", "new_id",
]


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ─── Runs ────────────────────────────────────────────────────────────

@dataclass
class Run:
    """
    One execution of a workflow graph.

    ``graph_snapshot`` and ``agents_snapshot`` are taken at start so that
    edits to definitions never affect a run already in flight.
    """
    id: str
    graph_id: str
    status: RunStatus
    started_at: float
    updated_at: float
    finished_at: float | None = None

    output: dict[str, Any] | None = None
    trail: list[TrailStep] = field(default_factory=list)
    initial_input: Any = None

    # Continuation (only while waiting_for_user, or queued for resume)
    cursor: ResumeCursor | None = None
    # Ordered {name, args, result} entries for placeholder resolution
    tool_results: list[dict[str, Any]] = field(default_factory=list)

    graph_snapshot: dict[str, Any] = field(default_factory=dict)
    agents_snapshot: dict[str, dict[str, Any]] = field(default_factory=dict)

    # Self-fix lineage
    retry_of: str | None = None

    @staticmethod
    def create(
        graph_id: str,
        graph_snapshot: dict[str, Any],
        agents_snapshot: dict[str, dict[str, Any]],
        initial_input: Any = None,
        retry_of: str | None = None,
    ) -> Run:
        now = time.time()
        return Run(
            id=new_id("run"),
            graph_id=graph_id,
            status=RunStatus.RUNNING,
            started_at=now,
            updated_at=now,
            initial_input=initial_input,
            graph_snapshot=graph_snapshot,
            agents_snapshot=agents_snapshot,
            retry_of=retry_of,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_public_dict(self) -> dict[str, Any]:
        """The shape exposed to callers (tools, HTTP)."""
        return {
            "id": self.id,
            "graph_id": self.graph_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "output": self.output,
            "trail": [s.to_dict() for s in self.trail],
            "retry_of": self.retry_of,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.to_public_dict()
        data.update({
            "updated_at": self.updated_at,
            "initial_input": self.initial_input,
            "cursor": self.cursor.to_dict() if self.cursor else None,
            "tool_results": self.tool_results,
            "graph_snapshot": self.graph_snapshot,
            "agents_snapshot": self.agents_snapshot,
        })
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Run:
        return Run(
            id=data["id"],
            graph_id=data.get("graph_id", ""),
            status=RunStatus(data.get("status", "running")),
            started_at=data.get("started_at") or 0.0,
            updated_at=data.get("updated_at") or data.get("started_at") or 0.0,
            finished_at=data.get("finished_at"),
            output=data.get("output"),
            trail=[TrailStep.from_dict(s) for s in data.get("trail") or []],
            initial_input=data.get("initial_input"),
            cursor=ResumeCursor.from_dict(data.get("cursor")),
            tool_results=list(data.get("tool_results") or []),
            graph_snapshot=data.get("graph_snapshot") or {},
            agents_snapshot=data.get("agents_snapshot") or {},
            retry_of=data.get("retry_of"),
        )


# ─── Queue Jobs ──────────────────────────────────────────────────────

class JobType(str, enum.Enum):
    START = "workflow_start"
    RESUME = "workflow_resume"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.RUNNING)


@dataclass
class WorkflowJob:
    """A unit of work for the queue: start a run, or resume a paused one."""
    id: str
    type: JobType
    run_id: str
    status: JobStatus = JobStatus.QUEUED
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None
    error: str | None = None

    @staticmethod
    def create(job_type: JobType, run_id: str, payload: dict[str, Any] | None = None) -> WorkflowJob:
        return WorkflowJob(id=new_id("job"), type=job_type, run_id=run_id, payload=payload or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "run_id": self.run_id,
            "status": self.status.value,
            "payload": self.payload,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }


# ─── Execution Events ────────────────────────────────────────────────

class EventType(str, enum.Enum):
    RUN_STARTED = "RunStarted"
    NODE_STARTED = "NodeStarted"
    NODE_COMPLETED = "NodeCompleted"
    RUN_WAITING = "RunWaiting"
    RUN_RESUMED = "RunResumed"
    RUN_COMPLETED = "RunCompleted"
    RUN_FAILED = "RunFailed"
    RUN_CANCELLED = "RunCancelled"


@dataclass
class ExecutionEvent:
    """Append-only audit record of something that happened to a run."""
    id: str
    run_id: str
    type: str
    payload: dict[str, Any] | None = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "type": self.type,
            "payload": self.payload,
            "created_at": self.created_at,
        }
