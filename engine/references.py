"""
Relay — Cross-Call Reference Resolution

A planner often emits several tool calls in one batch, where a later
call needs an id the earlier one has not produced yet:

    create_workflow {"name": "Weather chat"}
    update_workflow {"id": "{{create_workflow.id}}", "nodes": [...]}

resolve_references() walks the argument tree of the later call and
substitutes each ``{{toolName.path}}`` placeholder with the value found in
the most recent result of ``toolName``. Unresolvable placeholders are left
verbatim so the failure stays visible to the caller.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][\w\-]*)((?:\.[\w\-]+)+)\s*\}\}")

_MISSING = object()


def _walk_path(value: Any, segments: Sequence[str]) -> Any:
    node = value
    for seg in segments:
        if isinstance(node, Mapping):
            if seg not in node:
                return _MISSING
            node = node[seg]
        elif isinstance(node, list) and seg.isdigit():
            idx = int(seg)
            if idx >= len(node):
                return _MISSING
            node = node[idx]
        else:
            return _MISSING
    return node


def lookup(result: Any, path: str) -> Any:
    """
    Resolve a dotted path against one result, with suffix fallback.

    ``workflow.id`` is tried as-is, then as ``id``. A null value counts as
    no match. Returns the module sentinel ``_MISSING`` when nothing matches.
    """
    segments = [s for s in path.split(".") if s]
    for start in range(len(segments)):
        found = _walk_path(result, segments[start:])
        if found is not _MISSING and found is not None:
            return found
    return _MISSING


def _resolve_one(tool_name: str, path: str, prior_results: Sequence[Any]) -> Any:
    # right to left: the most recent call of the tool wins
    for entry in reversed(prior_results):
        if not isinstance(entry, Mapping) or entry.get("name") != tool_name:
            continue
        return lookup(entry.get("result"), path)
    return _MISSING


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def _resolve_string(text: str, prior_results: Sequence[Any]) -> Any:
    whole = PLACEHOLDER_RE.fullmatch(text.strip())
    if whole:
        value = _resolve_one(whole.group(1), whole.group(2), prior_results)
        return text if value is _MISSING else value

    def substitute(match: re.Match) -> str:
        value = _resolve_one(match.group(1), match.group(2), prior_results)
        return match.group(0) if value is _MISSING else _stringify(value)

    return PLACEHOLDER_RE.sub(substitute, text)


def resolve_references(args: Any, prior_results: Sequence[Any] | None) -> Any:
    """
    Return a copy of ``args`` with every placeholder resolved.

    Args:
        args: Tool arguments (any JSON-shaped value)
        prior_results: Ordered ``{"name", "result"}`` entries already
            produced in the same run, oldest first

    The input is never mutated; non-string leaves are passed through.
    """
    prior = list(prior_results or [])
    if isinstance(args, str):
        return _resolve_string(args, prior) if "{{" in args else args
    if isinstance(args, Mapping):
        return {k: resolve_references(v, prior) for k, v in args.items()}
    if isinstance(args, list):
        return [resolve_references(v, prior) for v in args]
    if isinstance(args, tuple):
        return tuple(resolve_references(v, prior) for v in args)
    return args


def find_placeholders(args: Any) -> list[str]:
    """List every ``tool.path`` placeholder in an argument tree, in order."""
    found: list[str] = []
    if isinstance(args, str):
        found.extend(m.group(1) + m.group(2) for m in PLACEHOLDER_RE.finditer(args))
    elif isinstance(args, Mapping):
        for v in args.values():
            found.extend(find_placeholders(v))
    elif isinstance(args, (list, tuple)):
        for v in args:
            found.extend(find_placeholders(v))
    return found
