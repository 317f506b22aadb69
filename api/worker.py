"""
Relay — Worker Backends

Pluggable backends that decide when queued workflow jobs run:
  - InlineBackend: drains the queue synchronously as soon as a job is queued (dev/testing)
  - PollingBackend: worker threads poll the queue (in-process, bounded concurrency)
  - ArqBackend: hands each job to arq + Redis; api/arq_worker.py executes it (production)

The active backend is selected by ``worker.mode`` in relay.yaml
(RELAY_WORKER__MODE env var):
  inline    → InlineBackend
  polling   → PollingBackend (alias: thread)
  arq       → ArqBackend
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from coordinator.types import WorkflowJob

logger = logging.getLogger("relay.worker")


# ═══════════════════════════════════════════════════════════════════
# Worker Backend Interface
# ═══════════════════════════════════════════════════════════════════

class WorkerBackend:
    """Abstract interface for job dispatch. Backends subscribe to the coordinator's queue."""

    name = "abstract"

    def __init__(self, coordinator: Any):
        self.coordinator = coordinator
        coordinator.queue.subscribe(self.on_job_queued)

    def on_job_queued(self, job: WorkflowJob) -> None:
        """Called by the queue for every newly queued job."""
        raise NotImplementedError

    def stats(self) -> dict[str, Any]:
        return {"backend": self.name}

    def shutdown(self):
        """Graceful shutdown."""
        pass


# ═══════════════════════════════════════════════════════════════════
# Inline Backend (synchronous, dev/test)
# ═══════════════════════════════════════════════════════════════════

class InlineBackend(WorkerBackend):
    """
    Synchronous in-process execution. The call that queued the job
    returns only after the queue is empty again.
    """

    name = "inline"

    def __init__(self, coordinator: Any):
        self._local = threading.local()
        super().__init__(coordinator)

    def on_job_queued(self, job: WorkflowJob) -> None:
        # A job queued while this thread is already draining is picked up
        # by the outer drain loop.
        if getattr(self._local, "draining", False):
            return
        self._local.draining = True
        try:
            while self.coordinator.process_one_workflow_job() is not None:
                pass
        finally:
            self._local.draining = False


# ═══════════════════════════════════════════════════════════════════
# Polling Backend (thread pool)
# ═══════════════════════════════════════════════════════════════════

class PollingBackend(WorkerBackend):
    """
    Worker threads that repeatedly call process_one_workflow_job().

    Each thread sleeps ``poll_interval`` seconds when the queue is empty
    and is woken early when a job is queued. Bounded concurrency:
    ``max_workers`` jobs run at once.
    """

    name = "polling"

    def __init__(self, coordinator: Any, max_workers: int = 2, poll_interval: float = 1.0):
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._wake = threading.Condition()
        super().__init__(coordinator)
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="relay_worker",
        )
        for _ in range(max_workers):
            self._pool.submit(self._loop)
        logger.info("PollingBackend started: max_workers=%d poll_interval=%.2fs",
                    max_workers, poll_interval)

    def on_job_queued(self, job: WorkflowJob) -> None:
        with self._wake:
            self._wake.notify()

    def _loop(self):
        """Run in worker thread."""
        while not self._stop.is_set():
            try:
                job = self.coordinator.process_one_workflow_job()
            except Exception:
                logger.exception("Worker loop error")
                job = None
            if job is None:
                with self._wake:
                    self._wake.wait(timeout=self.poll_interval)

    def stats(self) -> dict[str, Any]:
        return {"backend": self.name, "max_workers": self.max_workers,
                "poll_interval_seconds": self.poll_interval}

    def shutdown(self):
        logger.info("Shutting down PollingBackend...")
        self._stop.set()
        with self._wake:
            self._wake.notify_all()
        self._pool.shutdown(wait=True, cancel_futures=False)


# ═══════════════════════════════════════════════════════════════════
# Arq Backend (production — Redis)
# ═══════════════════════════════════════════════════════════════════

class ArqBackend(WorkerBackend):
    """
    Async execution via arq + Redis.

    Every queued job is claimed locally and forwarded to Redis as a
    ``run_workflow_job`` task; the local job completes once the task is
    enqueued. The arq worker (api/arq_worker.py) executes the run against
    the shared SQLite store, so ``store.db_path`` must be set.

    Requires: pip install arq redis
    """

    name = "arq"

    def __init__(self, coordinator: Any, redis_url: str = "redis://localhost:6379"):
        self.redis_url = redis_url
        self._arq_pool = None
        self._loop = None
        self._lock = threading.Lock()
        self.dispatched = 0
        super().__init__(coordinator)

    def _ensure_pool(self):
        """Lazy-init arq Redis pool. Caller holds self._lock."""
        if self._arq_pool is not None:
            return
        import asyncio
        from arq import create_pool
        from arq.connections import RedisSettings

        settings = RedisSettings.from_dsn(self.redis_url)
        self._loop = asyncio.new_event_loop()
        try:
            self._arq_pool = self._loop.run_until_complete(create_pool(settings))
        except Exception as e:
            raise RuntimeError(f"Cannot connect to Redis at {self.redis_url}: {e}") from e

    def _dispatch(self, job: WorkflowJob) -> None:
        with self._lock:
            self._ensure_pool()
            self._loop.run_until_complete(
                self._arq_pool.enqueue_job(
                    "run_workflow_job",
                    _job_id=job.id,
                    run_id=job.run_id,
                    job_type=job.type.value,
                )
            )
            self.dispatched += 1
        logger.info("Enqueued arq job %s for run %s", job.id, job.run_id)

    def on_job_queued(self, job: WorkflowJob) -> None:
        self.coordinator.queue.process_one_workflow_job(self._dispatch)

    def stats(self) -> dict[str, Any]:
        return {"backend": self.name, "redis_url": self.redis_url, "dispatched": self.dispatched}

    def shutdown(self):
        with self._lock:
            if self._arq_pool is not None:
                self._loop.run_until_complete(self._arq_pool.close())
                self._loop.close()
                self._arq_pool = None


# ═══════════════════════════════════════════════════════════════════
# Backend Factory
# ═══════════════════════════════════════════════════════════════════

def create_backend(
    coordinator: Any,
    mode: str | None = None,
    max_workers: int | None = None,
    poll_interval: float | None = None,
    redis_url: str | None = None,
) -> WorkerBackend:
    """
    Create the worker backend for ``coordinator``.

    Unset arguments come from the coordinator's RuntimeSettings
    (worker.mode, worker.max_workers, worker.poll_interval_seconds,
    worker.redis_url).
    """
    settings = coordinator.settings
    mode = (mode or settings.worker_mode or "inline").lower()

    if mode == "inline":
        logger.info("Worker backend: InlineBackend (synchronous)")
        return InlineBackend(coordinator)

    if mode in ("polling", "thread"):
        workers = max_workers or settings.max_workers
        logger.info("Worker backend: PollingBackend (max_workers=%d)", workers)
        return PollingBackend(
            coordinator,
            max_workers=workers,
            poll_interval=poll_interval or settings.poll_interval_seconds,
        )

    if mode == "arq":
        url = redis_url or settings.redis_url
        if not settings.db_path:
            logger.warning("ArqBackend without store.db_path: the arq worker cannot see these runs")
        logger.info("Worker backend: ArqBackend (redis=%s)", url)
        return ArqBackend(coordinator, redis_url=url)

    raise ValueError(f"Unknown worker mode '{mode}'. Supported: inline, polling, arq")
