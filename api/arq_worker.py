"""
Relay — arq Worker Entry Point

This module is the CMD target for the worker container.
It defines the arq worker class that executes workflow jobs from Redis.
Runs are read from and written to the shared SQLite store
(``store.db_path``), so the API process and the worker see the same runs.

Usage:
    python -m api.arq_worker

    # Or via arq CLI:
    arq api.arq_worker.WorkerSettings
"""

from __future__ import annotations

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor

from arq.connections import RedisSettings

from engine.config import get_settings, load_config

logger = logging.getLogger("relay.arq_worker")


async def run_workflow_job(
    ctx: dict,
    *,
    run_id: str,
    job_type: str = "workflow_start",
):
    """
    arq task function. Runs the coordinator in a thread pool
    to avoid blocking the async event loop.
    """
    loop = asyncio.get_running_loop()
    pool: ThreadPoolExecutor = ctx.get("pool")
    coordinator = ctx["coordinator"]

    def _execute():
        run = coordinator.execute(run_id)
        if run is None:
            raise LookupError(f"Run not found: {run_id}")
        return run.status.value

    status = await loop.run_in_executor(pool, _execute)
    logger.info("Completed %s for run %s (%s)", job_type, run_id, status)
    return status


async def startup(ctx: dict):
    """arq startup hook — build the coordinator and the thread pool."""
    from coordinator.runtime import Coordinator
    from coordinator.store import create_store
    from engine.llm import create_call_llm
    from engine.logging import configure_logging

    settings = get_settings()
    configure_logging(level=settings.log_level)
    if not settings.db_path:
        logger.warning("store.db_path is not set: this worker uses a private in-memory store")

    ctx["coordinator"] = Coordinator(
        store=create_store(settings.db_path),
        call_llm=create_call_llm(load_config()),
        settings=settings,
    )
    ctx["pool"] = ThreadPoolExecutor(
        max_workers=settings.max_workers,
        thread_name_prefix="relay_worker",
    )
    logger.info("arq worker started: max_workers=%d", settings.max_workers)


async def shutdown(ctx: dict):
    """arq shutdown hook — clean up thread pool and store."""
    pool = ctx.get("pool")
    if pool:
        pool.shutdown(wait=True)
    coordinator = ctx.get("coordinator")
    if coordinator is not None:
        coordinator.store.close()
    logger.info("arq worker shutdown complete")


class WorkerSettings:
    """arq worker configuration."""
    functions = [run_workflow_job]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = get_settings().max_workers
    job_timeout = int(os.environ.get("RELAY_JOB_TIMEOUT", "300"))  # 5 min default
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)


if __name__ == "__main__":
    from arq import run_worker
    run_worker(WorkerSettings)
