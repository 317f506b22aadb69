"""
Relay — Runtime Coordinator

Run lifecycle, the resumable job queue, and run persistence.

Usage:
    from coordinator.runtime import Coordinator

    coord = Coordinator(call_llm=my_llm)
    run_id = coord.start(workflow_id, initial_input="Plan a trip")
    run = coord.get(run_id)
    if run.status == RunStatus.WAITING_FOR_USER:
        coord.respond(run_id, "Yes, book it")
        coord.process_one_workflow_job()
"""

from coordinator.types import (
    RUN_CANCELLED_MESSAGE,
    ExecutionEvent,
    EventType,
    JobStatus,
    JobType,
    Run,
    RunStatus,
    WorkflowJob,
)
from coordinator.store import MemoryStore, RunStore, SQLiteStore, create_store
from coordinator.queue import DuplicateResumeError, WorkflowQueue
from coordinator.runtime import Coordinator, RunLocks, WorkflowNotFound

__all__ = [
    "Coordinator",
    "RunLocks",
    "WorkflowNotFound",
    "WorkflowQueue",
    "DuplicateResumeError",
    "RunStore",
    "MemoryStore",
    "SQLiteStore",
    "create_store",
    "Run",
    "RunStatus",
    "WorkflowJob",
    "JobType",
    "JobStatus",
    "ExecutionEvent",
    "EventType",
    "RUN_CANCELLED_MESSAGE",
]
