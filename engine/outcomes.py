"""
Relay — Tool Outcome Classification

Tool results have no shared schema. A shell tool returns an exit code,
an HTTP tool a status code, a CRUD tool an ``error`` string, and an
interaction tool asks the run to wait for a human. This module decodes
those shapes in priority order and falls through to "success" for
anything it does not recognize.

Every function here is pure and total: malformed input yields a
boolean or an empty result, never an exception.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

# Tools whose results can ask the run to wait for a human.
ASK_USER_TOOLS = frozenset({"ask_user", "ask_credentials", "request_user_help"})
FORMAT_RESPONSE_TOOL = "format_response"


def _is_number(value: Any) -> bool:
    # bool is an int subclass; True is not an exit code
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


# ---------------------------------------------------------------------------
# Success / failure
# ---------------------------------------------------------------------------

def is_failure(result: Any) -> bool:
    """
    Decide whether a raw tool result represents a failure.

    Rules, in order:
      1. non-mapping or None → not a failure
      2. ``error`` is a non-blank string → failure
      3. ``exitCode`` is a non-zero number → failure
      4. ``statusCode`` or ``status`` is a number in [400, 599] → failure
      5. otherwise → not a failure
    """
    if not isinstance(result, Mapping):
        return False
    if _non_empty_str(result.get("error")):
        return True
    exit_code = result.get("exitCode")
    if _is_number(exit_code) and exit_code != 0:
        return True
    for key in ("statusCode", "status"):
        code = result.get(key)
        if _is_number(code) and 400 <= code <= 599:
            return True
    return False


def failure_message(result: Any) -> str:
    """Human-readable reason for a failed result ("" when not a failure)."""
    if not is_failure(result):
        return ""
    if _non_empty_str(result.get("error")):
        message = result["error"].strip()
        detail = result.get("message")
        if _non_empty_str(detail) and detail.strip() != message:
            message = f"{message}: {detail.strip()}"
        return message
    exit_code = result.get("exitCode")
    if _is_number(exit_code) and exit_code != 0:
        stderr = result.get("stderr")
        suffix = f": {stderr.strip()[:200]}" if _non_empty_str(stderr) else ""
        return f"exited with code {exit_code}{suffix}"
    code = result.get("statusCode", result.get("status"))
    return f"returned HTTP status {code}"


# ---------------------------------------------------------------------------
# Waiting for human input
# ---------------------------------------------------------------------------

def is_waiting_for_input(name: Any, result: Any) -> bool:
    """
    True when a single tool result asks the run to wait for a human.

      - ask_user / ask_credentials / request_user_help with
        ``waitingForUser: true`` or an ``options`` list
      - format_response with ``formatted: true`` and non-empty ``needsInput``
    """
    if not isinstance(result, Mapping):
        return False
    if name in ASK_USER_TOOLS:
        if result.get("waitingForUser") is True:
            return True
        options = result.get("options")
        return isinstance(options, list)
    if name == FORMAT_RESPONSE_TOOL:
        return result.get("formatted") is True and _non_empty_str(result.get("needsInput"))
    return False


def _iter_results(tool_results: Any):
    if not isinstance(tool_results, Sequence) or isinstance(tool_results, (str, bytes)):
        return
    for entry in tool_results:
        if isinstance(entry, Mapping):
            yield entry.get("name"), entry.get("result")


def has_waiting_for_input(tool_results: Any) -> bool:
    """True if any ``{name, result}`` entry satisfies is_waiting_for_input."""
    return any(is_waiting_for_input(name, result) for name, result in _iter_results(tool_results))


def _string_options(options: Any) -> list[str]:
    if not isinstance(options, list):
        return []
    return [str(o) for o in options if o is not None and str(o).strip()]


def interactive_prompt(name: Any, result: Any) -> dict[str, Any] | None:
    """Extract ``{question, options}`` from a waiting result, else None."""
    if not is_waiting_for_input(name, result):
        return None
    if name == FORMAT_RESPONSE_TOOL:
        return {
            "question": result["needsInput"].strip(),
            "options": _string_options(result.get("options")),
        }
    question = result.get("question") or result.get("message") or ""
    if not isinstance(question, str):
        question = str(question)
    return {"question": question, "options": _string_options(result.get("options"))}


def get_turn_status(tool_results: Any, use_last_ask_user: bool = False) -> dict[str, Any]:
    """
    Summarize a turn's tool results.

    Returns ``{"status": "waiting_for_input", "interactive_prompt": {...}}``
    when some result waits for a human (the first one, or the last one if
    ``use_last_ask_user``), else ``{"status": "completed"}``.
    """
    entries = list(_iter_results(tool_results))
    if use_last_ask_user:
        entries.reverse()
    for name, result in entries:
        prompt = interactive_prompt(name, result)
        if prompt is not None:
            return {"status": "waiting_for_input", "interactive_prompt": prompt}
    return {"status": "completed"}
