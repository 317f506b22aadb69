"""
Relay — Structured Logging with Run Correlation

JSON log lines for every run event, keyed by a per-run trace id so a
run can be followed across start, pause, resume and finish even when
the resume happens in another worker process.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Schema: OTel-compatible field names (trace_id, span_id, service.name)
  - Configurable log level: DEBUG (full tool args/results), INFO (lifecycle), WARNING (errors only)

Usage:
    from engine.logging import RunLogger, configure_logging

    configure_logging(level="INFO")
    log = RunLogger(run_id="run_ab12", graph_id="wf_1")
    log.on_run_start()
    log.on_node_start("n1", round_index=0)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "relay"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Structured fields come from either ``record.structured`` (set by
    RunLogger) or a plain ``extra={...}`` dict passed to a module logger.
    """

    _RESERVED = set(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime", "structured"}

    def __init__(self, service_name: str = "relay"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("RELAY_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        # extra={...} fields land directly on the record
        for key, value in record.__dict__.items():
            if key not in self._RESERVED and not key.startswith("_"):
                entry[key] = value

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "relay",
) -> logging.Logger:
    """
    Configure the relay logger with JSON output.

    Safe to call repeatedly: existing handlers are replaced, and child
    loggers are reset so they inherit the new level.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the relay namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_trace_id() -> str:
    """OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """OTel-compatible span ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Run Logger
# ═══════════════════════════════════════════════════════════════════

class RunLogger:
    """
    Structured logger for one run.

    The trace id defaults to the run id so that log lines written by the
    process that started the run and by the worker that resumes it share
    the same correlation key.
    """

    def __init__(self, run_id: str = "", graph_id: str = "", trace_id: str | None = None):
        self.run_id = run_id
        self.graph_id = graph_id
        self.trace_id = trace_id or run_id or generate_trace_id()
        self._logger = get_logger("trace")
        self._node_spans: dict[str, str] = {}

    def _base_fields(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "run_id": self.run_id,
            "graph_id": self.graph_id,
        }

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = {**self._base_fields(), "action": action, **fields}
        self._logger.handle(record)

    def on_run_start(self, resumed: bool = False) -> None:
        self._emit(logging.INFO, "run_resume" if resumed else "run_start")

    def on_node_start(self, node_id: str, round_index: int) -> None:
        span_id = generate_span_id()
        self._node_spans[node_id] = span_id
        self._emit(
            logging.INFO, "node_start",
            node_id=node_id, round=round_index, span_id=span_id,
        )

    def on_tool_call(self, node_id: str, tool_name: str, failed: bool,
                     elapsed_ms: float, args: Any = None, result: Any = None) -> None:
        fields = {
            "node_id": node_id,
            "tool": tool_name,
            "failed": failed,
            "latency_ms": round(elapsed_ms, 1),
        }
        if node_id in self._node_spans:
            fields["span_id"] = self._node_spans[node_id]
        self._emit(logging.WARNING if failed else logging.INFO, "tool_call", **fields)

        if self._logger.isEnabledFor(logging.DEBUG):
            self._emit(logging.DEBUG, "tool_call_full",
                       node_id=node_id, tool=tool_name, args=args, result=result)

    def on_step_appended(self, order: int, node_id: str, error: str | None = None) -> None:
        fields: dict[str, Any] = {"order": order, "node_id": node_id}
        if error:
            fields["error"] = error[:500]
        self._emit(logging.INFO, "step_appended", **fields)

    def on_run_paused(self, node_id: str, question: str) -> None:
        self._emit(logging.INFO, "run_paused", node_id=node_id, question=question[:500])

    def on_run_end(self, status: str, elapsed_s: float, steps: int = 0,
                   error: str | None = None) -> None:
        fields: dict[str, Any] = {
            "status": status,
            "elapsed_s": round(elapsed_s, 2),
            "steps": steps,
        }
        if error:
            fields["error"] = error[:500]
        level = logging.ERROR if status == "failed" else logging.INFO
        self._emit(level, "run_end", **fields)
