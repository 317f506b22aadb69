"""
Relay — Tool Dispatcher

Every tool invocation a run makes goes through ToolDispatcher.execute():
agent decisions, tool nodes, and the planner-facing CRUD surface alike.

Contract:
  - Unknown tool names return ``{"error": "Unknown tool: <name>"}``
  - Handlers validate their own inputs and return ``{"error": ...}``
    dicts for expected failures
  - An exception escaping a handler is re-raised as ToolExecutionError
    with the tool name attached
  - Every call is timed and kept in a bounded call log

Usage:
    dispatcher = ToolDispatcher()
    dispatcher.register("echo", lambda args, ctx: {"echo": args})
    result = dispatcher.execute("echo", {"x": 1}, ToolContext(run_id="r1"))
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable

from engine.outcomes import failure_message, is_failure

logger = logging.getLogger("relay.tools")

ToolHandler = Callable[[dict[str, Any], "ToolContext"], Any]


class ToolExecutionError(Exception):
    """A tool handler raised. Carries the tool name; the cause is chained."""

    def __init__(self, tool_name: str, cause: BaseException):
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(f"Tool {tool_name!r} failed: {cause}")


@dataclass
class ToolContext:
    """Collaborators a tool handler may need. All optional."""
    store: Any = None
    coordinator: Any = None
    call_llm: Callable[[dict[str, Any]], Any] | None = None
    run_id: str = ""
    node_id: str = ""
    settings: Any = None


@dataclass
class RegisteredTool:
    """A tool registered with the dispatcher."""
    name: str
    fn: ToolHandler
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)

    def schema(self) -> dict[str, Any]:
        """Function-calling schema handed to the LLM."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters or {"type": "object", "properties": {}},
        }


class ToolDispatcher:
    """
    Registry and single entry point for tool calls.

    Thread-safe: registration and the call log are lock-guarded so one
    dispatcher can serve runs on several worker threads.
    """

    def __init__(self, call_log_size: int = 1000):
        self._tools: dict[str, RegisteredTool] = {}
        self._call_log: deque[dict[str, Any]] = deque(maxlen=call_log_size)
        self._lock = threading.Lock()

    def register(
        self,
        name: str,
        fn: ToolHandler,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> None:
        """Register (or replace) a tool handler."""
        with self._lock:
            self._tools[name] = RegisteredTool(
                name=name, fn=fn, description=description, parameters=parameters or {},
            )
        logger.debug("Tool registered: %s", name)

    def get_tool(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def schemas(self, names: list[str] | None = None) -> list[dict[str, Any]]:
        """Schemas for the given tool names (all tools when None). Unknown names are skipped."""
        selected = names if names is not None else self.list_tools()
        return [self._tools[n].schema() for n in selected if n in self._tools]

    def execute(self, name: str, args: Any, context: ToolContext | None = None) -> Any:
        """
        Run one tool.

        Raises:
            ToolExecutionError: the handler raised
        """
        context = context or ToolContext()
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("Unknown tool requested: %s", name, extra={"run_id": context.run_id})
            self._log_call(name, context, 0.0, False, f"Unknown tool: {name}")
            return {"error": f"Unknown tool: {name}"}

        if not isinstance(args, Mapping):
            args = {} if args is None else {"input": args}

        start = time.time()
        try:
            result = tool.fn(dict(args), context)
        except Exception as e:
            elapsed = time.time() - start
            self._log_call(name, context, elapsed, False, str(e))
            logger.exception("Tool %s raised", name, extra={"run_id": context.run_id})
            raise ToolExecutionError(name, e) from e

        elapsed = time.time() - start
        failed = is_failure(result)
        self._log_call(name, context, elapsed, not failed, failure_message(result) if failed else None)
        return result

    @property
    def call_log(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._call_log)

    def _log_call(self, tool_name, context, elapsed, success, error=None):
        entry = {
            "tool": tool_name,
            "run_id": context.run_id,
            "node_id": context.node_id,
            "elapsed_ms": round(elapsed * 1000, 2),
            "success": success,
            "timestamp": time.time(),
        }
        if error:
            entry["error"] = error
        with self._lock:
            self._call_log.append(entry)
