"""
Relay — Resumable Workflow Job Queue

FIFO of workflow jobs: ``workflow_start`` runs a freshly created run,
``workflow_resume`` continues a paused run after the user answered.
The queue only tracks jobs; an executor (the coordinator) does the work,
and a worker backend decides when process_one_workflow_job() is called.

Listeners registered with subscribe() are told about every new job, so
an inline backend can drain immediately and a remote backend can hand
the job id to its broker.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable

from coordinator.types import JobStatus, JobType, WorkflowJob

logger = logging.getLogger("relay.queue")

DEFAULT_CONCURRENCY = 2
MAX_FINISHED_JOBS = 1000


class DuplicateResumeError(ValueError):
    """A resume job for this run is already queued or running."""

    def __init__(self, run_id: str, job_id: str):
        self.run_id = run_id
        self.job_id = job_id
        super().__init__(f"Run {run_id} already has an active resume job ({job_id})")


JobExecutor = Callable[[WorkflowJob], Any]
JobListener = Callable[[WorkflowJob], None]


class WorkflowQueue:
    """In-process FIFO job queue. Thread-safe."""

    def __init__(self, concurrency: int = DEFAULT_CONCURRENCY):
        self.concurrency = concurrency
        self._jobs: dict[str, WorkflowJob] = {}
        self._pending: deque[str] = deque()
        self._finished: deque[str] = deque()
        self._listeners: list[JobListener] = []
        self._lock = threading.Lock()

    # ─── Enqueue ─────────────────────────────────────────────────────

    def subscribe(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def _enqueue(self, job: WorkflowJob) -> str:
        with self._lock:
            self._jobs[job.id] = job
            self._pending.append(job.id)
        logger.info("Job queued: %s %s run=%s", job.id, job.type.value, job.run_id)
        for listener in list(self._listeners):
            listener(job)
        return job.id

    def enqueue_start(self, run_id: str, workflow_id: str = "") -> str:
        return self._enqueue(WorkflowJob.create(JobType.START, run_id, {"workflow_id": workflow_id}))

    def enqueue_resume(self, run_id: str, user_response: Any = None) -> str:
        """
        Queue a resume for a paused run.

        Raises:
            DuplicateResumeError: the run already has an active resume job
        """
        with self._lock:
            for job in self._jobs.values():
                if job.run_id == run_id and job.type == JobType.RESUME and job.status.is_active:
                    raise DuplicateResumeError(run_id, job.id)
            job = WorkflowJob.create(JobType.RESUME, run_id, {"user_response": user_response})
        return self._enqueue(job)

    # ─── Processing ──────────────────────────────────────────────────

    def _claim(self) -> WorkflowJob | None:
        with self._lock:
            while self._pending:
                job = self._jobs.get(self._pending.popleft())
                if job is not None and job.status == JobStatus.QUEUED:
                    job.status = JobStatus.RUNNING
                    job.started_at = time.time()
                    return job
        return None

    def _finish(self, job: WorkflowJob, error: str | None) -> None:
        with self._lock:
            job.status = JobStatus.FAILED if error else JobStatus.COMPLETED
            job.error = error
            job.finished_at = time.time()
            self._finished.append(job.id)
            while len(self._finished) > MAX_FINISHED_JOBS:
                self._jobs.pop(self._finished.popleft(), None)

    def process_one_workflow_job(self, executor: JobExecutor) -> WorkflowJob | None:
        """
        Run the oldest queued job through ``executor``.

        Returns the processed job (completed or failed), or None when
        nothing was queued. Executor exceptions mark the job failed and
        are not re-raised.
        """
        job = self._claim()
        if job is None:
            return None
        try:
            executor(job)
        except Exception as e:
            logger.exception("Job %s (%s) failed", job.id, job.type.value)
            self._finish(job, f"{type(e).__name__}: {e}")
        else:
            self._finish(job, None)
        return job

    # ─── Inspection ──────────────────────────────────────────────────

    def get_job(self, job_id: str) -> WorkflowJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self, status: JobStatus | str | None = None, limit: int = 50) -> list[WorkflowJob]:
        """Newest first."""
        with self._lock:
            jobs = list(self._jobs.values())
        if status:
            wanted = JobStatus(status)
            jobs = [j for j in jobs if j.status == wanted]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    def active_job_for(self, run_id: str) -> WorkflowJob | None:
        with self._lock:
            for job in self._jobs.values():
                if job.run_id == run_id and job.status.is_active:
                    return job
        return None

    def status(self) -> dict[str, int]:
        counts = {s: 0 for s in JobStatus}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status] += 1
        return {
            "queued": counts[JobStatus.QUEUED],
            "running": counts[JobStatus.RUNNING],
            "completed": counts[JobStatus.COMPLETED],
            "failed": counts[JobStatus.FAILED],
            "concurrency": self.concurrency,
        }
