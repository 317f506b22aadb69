"""
Relay — API Server

FastAPI application serving:
  POST /v1/runs                 — start a run of a workflow
  GET  /v1/runs                 — list runs (newest first)
  GET  /v1/runs/{id}            — run status, output and trail
  POST /v1/runs/{id}/respond    — answer a run waiting for user input
  POST /v1/runs/{id}/cancel     — cancel a running or waiting run
  POST /v1/runs/{id}/retry      — self-fix: re-run a failed run
  GET  /v1/runs/{id}/events     — execution events for a run
  GET  /v1/queue                — workflow job queue status
  POST /v1/workflows            — store a workflow definition
  GET  /v1/workflows/{id}       — fetch a workflow definition
  GET  /health                  — liveness
  GET  /ready                   — readiness (store reachable)

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Development (no Redis)
    RELAY_WORKER__MODE=inline uvicorn api.server:app --reload

Requires: pip install fastapi uvicorn
Optional: pip install arq redis (for production worker)
"""

from __future__ import annotations

import logging
import time
from typing import Any

logger = logging.getLogger("relay.api")

_ERROR_STATUS = {
    "not_found": 404,
    "not_pending": 400,
    "not_cancellable": 400,
    "not_retryable": 400,
    "retry_limit": 400,
}


def create_app(coordinator: Any = None, worker_mode: str | None = None) -> Any:
    """
    Create and configure the FastAPI application.

    Returns the app instance. Separated from module-level creation
    so tests can create fresh instances around their own coordinator.
    Without one, the coordinator and its worker backend are built from
    relay.yaml on first use.
    """
    from fastapi import Body, FastAPI, HTTPException
    from fastapi.responses import JSONResponse

    from api.models import (
        CreateWorkflowRequest, QueueStatus, RespondRequest,
        RunAccepted, StartRunRequest,
    )
    from api.worker import WorkerBackend, create_backend
    from coordinator.runtime import Coordinator, WorkflowNotFound
    from coordinator.types import RunStatus, new_id
    from engine.state import Graph, validate_graph

    app = FastAPI(
        title="Relay API",
        version="0.1.0",
        description="Agent workflow execution core",
    )

    # ── State ────────────────────────────────────────────────

    _coordinator: Coordinator | None = coordinator
    _backend: WorkerBackend | None = None

    def get_coordinator() -> Coordinator:
        nonlocal _coordinator, _backend
        if _coordinator is None:
            from engine.config import get_settings, load_config
            from engine.llm import create_call_llm
            from engine.logging import configure_logging
            settings = get_settings()
            configure_logging(level=settings.log_level)
            _coordinator = Coordinator(
                call_llm=create_call_llm(load_config()),
                settings=settings,
            )
        if _backend is None:
            _backend = create_backend(_coordinator, mode=worker_mode)
        return _coordinator

    def error_response(result: dict[str, Any]) -> JSONResponse:
        status_code = _ERROR_STATUS.get(result.get("code", ""), 400)
        return JSONResponse(status_code=status_code, content=result)

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    def shutdown():
        if _backend:
            _backend.shutdown()

    # ── Runs ──────────────────────────────────────────────────

    @app.post("/v1/runs", response_model=None)
    def start_run(body: dict[str, Any] | None = Body(default=None)):
        request = StartRunRequest.from_body(body or {})
        errors = request.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        coord = get_coordinator()
        try:
            run_id = coord.start(request.workflow_id, request.input, background=request.background)
        except WorkflowNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        run = coord.get(run_id)
        accepted = RunAccepted(
            run_id=run_id,
            status=run.status.value,
            background=request.background,
            output=run.output,
        )
        return JSONResponse(content=accepted.to_dict())

    @app.get("/v1/runs")
    def list_runs(workflow_id: str | None = None, status: str | None = None, limit: int = 100):
        try:
            wanted = RunStatus(status) if status else None
        except ValueError:
            return JSONResponse(status_code=422, content={"errors": [f"Unknown status: {status}"]})
        runs = get_coordinator().list_runs(graph_id=workflow_id, status=wanted, limit=limit)
        return JSONResponse(content={
            "count": len(runs),
            "runs": [
                {"id": r.id, "graph_id": r.graph_id, "status": r.status.value,
                 "started_at": r.started_at, "finished_at": r.finished_at,
                 "retry_of": r.retry_of}
                for r in runs
            ],
        })

    @app.get("/v1/runs/{run_id}")
    def get_run(run_id: str):
        run = get_coordinator().get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return JSONResponse(content=run.to_public_dict())

    @app.post("/v1/runs/{run_id}/respond")
    def respond(run_id: str, body: dict[str, Any] | None = Body(default=None)):
        request = RespondRequest.from_body(body or {})
        errors = request.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        result = get_coordinator().respond(run_id, request.response)
        if not result.get("ok"):
            return error_response(result)
        return JSONResponse(content=result)

    @app.post("/v1/runs/{run_id}/cancel")
    def cancel(run_id: str):
        result = get_coordinator().cancel(run_id)
        if not result.get("ok"):
            return error_response(result)
        return JSONResponse(content=result)

    @app.post("/v1/runs/{run_id}/retry")
    def retry(run_id: str, background: bool = False):
        result = get_coordinator().retry(run_id, background=background)
        if not result.get("ok"):
            return error_response(result)
        return JSONResponse(content=result)

    @app.get("/v1/runs/{run_id}/events")
    def get_events(run_id: str):
        coord = get_coordinator()
        if coord.get(run_id) is None:
            raise HTTPException(status_code=404, detail="Run not found")
        events = coord.events(run_id)
        return JSONResponse(content={"run_id": run_id, "count": len(events), "events": events})

    # ── Queue ─────────────────────────────────────────────────

    @app.get("/v1/queue")
    def queue_status(status: str | None = None, limit: int = 50):
        coord = get_coordinator()
        try:
            jobs = coord.queue.list_jobs(status=status, limit=limit)
        except ValueError:
            return JSONResponse(status_code=422, content={"errors": [f"Unknown job status: {status}"]})
        summary = QueueStatus(**coord.queue.status(), jobs=[j.to_dict() for j in jobs])
        content = summary.to_dict()
        if _backend is not None:
            content["worker"] = _backend.stats()
        return JSONResponse(content=content)

    # ── Workflows ─────────────────────────────────────────────

    @app.post("/v1/workflows")
    def create_workflow(body: dict[str, Any] | None = Body(default=None)):
        request = CreateWorkflowRequest.from_body(body or {})
        errors = request.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        record = request.to_record()
        record["id"] = record["id"] or new_id("wf")
        graph = Graph.from_dict(record)

        issues = validate_graph(graph)
        fatal = [i.message for i in issues if i.fatal]
        if fatal:
            return JSONResponse(status_code=422, content={"errors": fatal})

        coord = get_coordinator()
        stored = graph.to_dict()
        coord.store.put_workflow(stored)
        logger.info("Workflow stored: %s (%d nodes)", graph.id, len(graph.nodes))
        return JSONResponse(status_code=201, content={
            "id": graph.id,
            "workflow": stored,
            "warnings": [i.message for i in issues if not i.fatal],
        })

    @app.get("/v1/workflows/{workflow_id}")
    def get_workflow(workflow_id: str):
        workflow = get_coordinator().store.get_workflow(workflow_id)
        if workflow is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return JSONResponse(content=workflow)

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    def ready():
        # Check the store is accessible
        try:
            stats = get_coordinator().store.stats()
            return JSONResponse(content={"status": "ok", "store": stats})
        except Exception as e:
            logger.exception("Readiness check failed")
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app()
