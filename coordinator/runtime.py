"""
Relay — Runtime Coordinator

Owns the lifecycle of every run:

    start(graph_id, initial_input)   → run_id
    respond(run_id, user_response)   → {"ok": True, ...} | {"error", "code"}
    cancel(run_id)                   → {"ok": True, ...} | {"error", "code"}
    retry(run_id)                    → {"ok": True, ...} | {"error", "code"}

State machine:

    running ──► completed | failed | cancelled
       │  ▲
       ▼  │ respond (enqueues workflow_resume)
    waiting_for_user ──► cancelled

Every state transition happens under the run's lock, and a run executes
in at most one place at a time. Execution itself does not hold the lock:
the stepper persists each step through a short locked write, so cancel()
can always get in between two node turns.
"""

from __future__ import annotations

import logging
import threading
import time
import traceback
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from coordinator.queue import DuplicateResumeError, WorkflowQueue
from coordinator.store import RunStore, create_store
from coordinator.types import (
    RUN_CANCELLED_MESSAGE,
    EventType,
    JobType,
    Run,
    RunStatus,
    WorkflowJob,
)
from engine.builtin_tools import register_builtin_tools
from engine.config import RuntimeSettings, get_settings
from engine.logging import RunLogger
from engine.state import Graph, TrailStep
from engine.stepper import GraphStepper, StepOutcome
from engine.tools import ToolDispatcher

logger = logging.getLogger("relay.coordinator")


class WorkflowNotFound(LookupError):
    """Raised when starting a run for a workflow id the store does not know."""

    def __init__(self, graph_id: str):
        self.graph_id = graph_id
        super().__init__(f"Workflow not found: {graph_id}")


# ─── Per-run locking ─────────────────────────────────────────────────

class RunLocks:
    """
    Lock registry keyed by run id.

    ``lock(run_id)`` serializes writers of one run record.
    ``executing(run_id)`` marks a run as actively executing in this
    process and refuses a second concurrent execution.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._active: set[str] = set()

    def lock(self, run_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(run_id)
            if lock is None:
                lock = self._locks[run_id] = threading.RLock()
            return lock

    def is_active(self, run_id: str) -> bool:
        with self._guard:
            return run_id in self._active

    @contextmanager
    def executing(self, run_id: str) -> Iterator[bool]:
        with self._guard:
            claimed = run_id not in self._active
            if claimed:
                self._active.add(run_id)
        try:
            yield claimed
        finally:
            if claimed:
                with self._guard:
                    self._active.discard(run_id)


def _not_found() -> dict[str, Any]:
    return {"error": "Run not found", "code": "not_found"}


# ─── Coordinator ─────────────────────────────────────────────────────

class Coordinator:
    """
    Runtime coordinator for workflow runs.

    All collaborators are optional: by default the store comes from
    ``store.db_path`` (SQLite when set, memory otherwise), the dispatcher
    carries the built-in tools, and the queue is in-process.
    """

    def __init__(
        self,
        store: RunStore | None = None,
        dispatcher: ToolDispatcher | None = None,
        call_llm: Callable[[dict[str, Any]], Any] | None = None,
        settings: RuntimeSettings | None = None,
        queue: WorkflowQueue | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or create_store(self.settings.db_path)
        self.dispatcher = dispatcher or register_builtin_tools(ToolDispatcher())
        self.call_llm = call_llm
        self.queue = queue or WorkflowQueue(concurrency=self.settings.max_workers)
        self.locks = RunLocks()
        self._cancel_requested: set[str] = set()
        self._cancel_guard = threading.Lock()

    # ─── Operations ──────────────────────────────────────────────────

    def start(
        self,
        graph_id: str,
        initial_input: Any = None,
        background: bool = False,
        retry_of: str | None = None,
    ) -> str:
        """
        Create a run for ``graph_id`` and execute it (inline, or queued
        when ``background``). Returns the run id.

        Raises:
            WorkflowNotFound: no workflow with that id
        """
        workflow = self.store.get_workflow(graph_id)
        if workflow is None:
            raise WorkflowNotFound(graph_id)

        graph = Graph.from_dict(workflow)
        agents: dict[str, dict[str, Any]] = {}
        for node in graph.nodes:
            agent_id = node.agent_id
            if agent_id and agent_id not in agents:
                record = self.store.get_agent(agent_id)
                if record is not None:
                    agents[agent_id] = record

        run = Run.create(
            graph_id=graph_id,
            graph_snapshot=graph.to_dict(),
            agents_snapshot=agents,
            initial_input=initial_input,
            retry_of=retry_of,
        )
        self.store.put_run(run)
        self.store.append_event(run.id, EventType.RUN_STARTED.value, {
            "graph_id": graph_id, "retry_of": retry_of,
        })
        logger.info("Run %s started for workflow %s", run.id, graph_id,
                    extra={"run_id": run.id, "graph_id": graph_id})

        if background:
            self.queue.enqueue_start(run.id, graph_id)
        else:
            self.execute(run.id)
        return run.id

    def respond(self, run_id: str, user_response: Any) -> dict[str, Any]:
        """Attach the user's answer to a paused run and queue its resume."""
        with self.locks.lock(run_id):
            run = self.store.get_run(run_id)
            if run is None:
                return _not_found()
            if run.status != RunStatus.WAITING_FOR_USER or run.cursor is None:
                return {"error": "Run is not waiting for user input", "code": "not_pending"}

            run.cursor.user_response = user_response
            run.cursor.has_user_response = True
            run.status = RunStatus.RUNNING
            self.store.put_run(run)
        # Enqueue outside the lock: an inline backend executes right away
        try:
            job_id = self.queue.enqueue_resume(run_id, user_response)
        except DuplicateResumeError as e:
            job_id = e.job_id
        logger.info("Run %s answered; resume job %s", run_id, job_id, extra={"run_id": run_id})
        return {"ok": True, "run_id": run_id, "job_id": job_id}

    def cancel(self, run_id: str) -> dict[str, Any]:
        """
        Cancel a running or waiting run.

        A run not executing right now is finalized immediately. One that
        is mid-execution stops at the stepper's next cancellation check.
        """
        with self.locks.lock(run_id):
            run = self.store.get_run(run_id)
            if run is None:
                return _not_found()
            if run.is_terminal:
                return {
                    "error": f"Run is already {run.status.value}",
                    "code": "not_cancellable",
                }
            if self.locks.is_active(run_id):
                with self._cancel_guard:
                    self._cancel_requested.add(run_id)
                logger.info("Cancellation requested for executing run %s", run_id)
                return {"ok": True, "run_id": run_id, "status": "cancelling"}

            self._apply_outcome(run, StepOutcome(
                status=RunStatus.CANCELLED,
                output={"error": RUN_CANCELLED_MESSAGE},
                error=RUN_CANCELLED_MESSAGE,
            ))
        return {"ok": True, "run_id": run_id, "status": RunStatus.CANCELLED.value}

    def retry(self, run_id: str, background: bool = False) -> dict[str, Any]:
        """
        Self-fix path: start a new run of the same workflow with the same
        input, linked to the failed one. Only failed runs qualify, and a
        retry chain is capped at ``max_self_fix_retries``.
        """
        run = self.store.get_run(run_id)
        if run is None:
            return _not_found()
        if run.status != RunStatus.FAILED:
            return {"error": "Only failed runs can be retried", "code": "not_retryable"}

        attempts = self._retry_depth(run)
        limit = self.settings.max_self_fix_retries
        if attempts >= limit:
            return {
                "error": f"Retry limit reached ({limit} attempts)",
                "code": "retry_limit",
            }
        try:
            new_id = self.start(run.graph_id, run.initial_input, background=background, retry_of=run.id)
        except WorkflowNotFound:
            return {"error": "Workflow not found", "code": "not_found"}
        return {"ok": True, "run_id": new_id, "retry_of": run_id, "attempt": attempts + 1}

    def get(self, run_id: str) -> Run | None:
        return self.store.get_run(run_id)

    def list_runs(
        self,
        graph_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[Run]:
        return self.store.list_runs(graph_id=graph_id, status=status, limit=limit)

    def events(self, run_id: str) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.store.get_events(run_id)]

    def fail_stuck_runs(self, max_running_seconds: int = 3600) -> list[str]:
        """Fail runs left RUNNING by a dead worker. Returns their ids."""
        failed = []
        for run in self.store.find_stuck_runs(max_running_seconds):
            if self.locks.is_active(run.id) or self.queue.active_job_for(run.id):
                continue
            with self.locks.lock(run.id):
                message = f"Run made no progress for {max_running_seconds}s"
                self._apply_outcome(run, StepOutcome(
                    status=RunStatus.FAILED,
                    output={"error": message, "stack": ""},
                    error=message,
                ))
            failed.append(run.id)
        return failed

    # ─── Queue integration ───────────────────────────────────────────

    def process_one_workflow_job(self) -> WorkflowJob | None:
        """Take the oldest queued job and execute it. None when the queue is empty."""
        return self.queue.process_one_workflow_job(self._execute_job)

    def _execute_job(self, job: WorkflowJob) -> None:
        run = self.execute(job.run_id)
        if run is None:
            raise LookupError(f"Run not found: {job.run_id}")
        if job.type == JobType.RESUME and run.status == RunStatus.RUNNING:
            logger.warning("Resume job %s left run %s running", job.id, run.id)

    # ─── Execution ───────────────────────────────────────────────────

    def execute(self, run_id: str) -> Run | None:
        """
        Run (or continue) a run whose status is RUNNING.

        Returns the stored run afterwards. A run already executing
        elsewhere in this process, or no longer RUNNING, is returned
        untouched.
        """
        with self.locks.executing(run_id) as claimed:
            if not claimed:
                logger.warning("Run %s is already executing", run_id)
                return self.store.get_run(run_id)

            with self.locks.lock(run_id):
                run = self.store.get_run(run_id)
                if run is None or run.status != RunStatus.RUNNING:
                    return run

            resumed = run.cursor is not None
            run_logger = RunLogger(run_id=run.id, graph_id=run.graph_id)
            run_logger.on_run_start(resumed=resumed)
            if resumed:
                self.store.append_event(run.id, EventType.RUN_RESUMED.value, {
                    "node_id": run.cursor.paused_node_id,
                })
            started = time.time()

            stepper = GraphStepper(
                dispatcher=self.dispatcher,
                call_llm=self.call_llm,
                store=self.store,
                coordinator=self,
                settings=self.settings,
            )
            try:
                outcome = stepper.run(
                    run,
                    is_cancelled=lambda: self._is_cancelled(run_id),
                    on_step=lambda step: self._persist_step(run, step),
                    on_node_start=lambda node_id, rnd: self.store.append_event(
                        run_id, EventType.NODE_STARTED.value, {"node_id": node_id, "round": rnd},
                    ),
                    run_logger=run_logger,
                )
            except Exception as e:
                logger.exception("Run %s crashed", run_id)
                outcome = StepOutcome(
                    status=RunStatus.FAILED,
                    output={"error": str(e), "stack": traceback.format_exc()},
                    error=str(e),
                )

            with self.locks.lock(run_id):
                final = self._apply_outcome(run, outcome)
            run_logger.on_run_end(
                final.status.value, time.time() - started,
                steps=len(final.trail), error=outcome.error,
            )
            return final

    def _is_cancelled(self, run_id: str) -> bool:
        with self._cancel_guard:
            if run_id in self._cancel_requested:
                return True
        stored = self.store.get_run(run_id)
        # Cancelled from another process while executing here
        return stored is not None and stored.status == RunStatus.CANCELLED

    def _persist_step(self, run: Run, step: TrailStep) -> None:
        with self.locks.lock(run.id):
            stored = self.store.get_run(run.id)
            if stored is not None and stored.is_terminal:
                return
            self.store.put_run(run)
        self.store.append_event(run.id, EventType.NODE_COMPLETED.value, {
            "node_id": step.node_id,
            "order": step.order,
            "round": step.round,
            "error": step.error,
            "waiting_for_user": step.waiting_for_user,
        })

    def _apply_outcome(self, run: Run, outcome: StepOutcome) -> Run:
        """Write a stepper outcome onto the run. Caller holds the run lock."""
        stored = self.store.get_run(run.id)
        if stored is not None and stored.status == RunStatus.CANCELLED:
            # Cancellation already recorded; keep it.
            self._clear_cancel(run.id)
            return stored

        with self._cancel_guard:
            cancel_pending = run.id in self._cancel_requested
        if cancel_pending and outcome.status not in (RunStatus.FAILED, RunStatus.CANCELLED):
            # The caller was told the run is cancelling; a pause or the
            # last node finishing does not undo that.
            outcome = StepOutcome(
                status=RunStatus.CANCELLED,
                output={"error": RUN_CANCELLED_MESSAGE},
                error=RUN_CANCELLED_MESSAGE,
            )

        run.status = outcome.status
        run.output = outcome.output
        run.cursor = outcome.cursor
        if run.is_terminal:
            run.finished_at = time.time()
            run.cursor = None

        event = {
            RunStatus.COMPLETED: EventType.RUN_COMPLETED,
            RunStatus.FAILED: EventType.RUN_FAILED,
            RunStatus.CANCELLED: EventType.RUN_CANCELLED,
            RunStatus.WAITING_FOR_USER: EventType.RUN_WAITING,
        }.get(run.status)
        with self.store.transaction():
            self.store.put_run(run)
            if event is not None:
                payload: dict[str, Any] = {"steps": len(run.trail)}
                if outcome.error:
                    payload["error"] = outcome.error
                if run.cursor is not None:
                    payload["node_id"] = run.cursor.paused_node_id
                self.store.append_event(run.id, event.value, payload)
        self._clear_cancel(run.id)

        log = logger.error if run.status == RunStatus.FAILED else logger.info
        log("Run %s → %s", run.id, run.status.value, extra={"run_id": run.id})
        return run

    def _clear_cancel(self, run_id: str) -> None:
        with self._cancel_guard:
            self._cancel_requested.discard(run_id)

    def _retry_depth(self, run: Run) -> int:
        depth = 0
        seen = {run.id}
        current = run
        while current.retry_of and current.retry_of not in seen:
            depth += 1
            seen.add(current.retry_of)
            previous = self.store.get_run(current.retry_of)
            if previous is None:
                break
            current = previous
        return depth
