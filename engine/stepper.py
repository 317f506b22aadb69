"""
Relay — Step-by-Step Graph Executor

Walks a workflow graph one node turn at a time, yielding control back
to the coordinator whenever a turn asks for human input.

A run moves forward through rounds. Round 0 starts at the entry nodes
(no incoming edge). A node's output is handed to each successor in edge
order. A node with conditional outgoing edges hands it to one successor
only: the first edge whose condition matches, else the first edge. A
successor not yet run this round joins this round's queue; one already
run this round is carried into the next round. The run ends when
a round carries nothing forward or when ``max_rounds`` rounds have run.
A graph without edges runs its nodes once, in declaration order, each
receiving the previous node's output.

When a turn pauses, everything needed to continue (round, queue, carry,
visited set, last output) goes into a ResumeCursor. Resuming re-enters
the paused node with the user's response as its input; steps already on
the trail are never re-run.

No LLM or storage dependency here: turns go through engine.nodes, and
persistence happens in the on_step callback the coordinator supplies.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable

from engine.nodes import TurnContext, run_node_turn
from engine.state import (
    RUN_CANCELLED_MESSAGE,
    Edge,
    Graph,
    GraphConfigError,
    ResumeCursor,
    RunStatus,
    TrailStep,
    validate_graph,
)
from engine.tools import ToolDispatcher

logger = logging.getLogger("relay.stepper")

DEFAULT_MAX_ROUNDS = 1


# ─── Result ───────────────────────────────────────────────────────

@dataclass
class StepOutcome:
    """Where execution stopped and what the run record should say."""
    status: RunStatus
    output: dict[str, Any]
    cursor: ResumeCursor | None = None
    steps_added: int = 0
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def paused(self) -> bool:
        return self.status == RunStatus.WAITING_FOR_USER


StepCallback = Callable[[TrailStep], None]
NodeStartCallback = Callable[[str, int], None]


def _never_cancelled() -> bool:
    return False


# ─── Routing ──────────────────────────────────────────────────────

@dataclass
class _Routing:
    successors: dict[str, list[Edge]]
    entries: list[str]
    edge_errors: dict[str, list[str]]
    orphan_errors: list[str]


def _build_routing(graph: Graph) -> _Routing:
    issues = validate_graph(graph)
    dangling = {i.edge_id for i in issues if i.kind == "dangling_edge"}
    edge_errors: dict[str, list[str]] = {}
    orphan_errors: list[str] = []
    for issue in issues:
        if issue.kind != "dangling_edge":
            continue
        if issue.node_id:
            edge_errors.setdefault(issue.node_id, []).append(issue.message)
        else:
            orphan_errors.append(issue.message)

    node_ids = [n.id for n in graph.nodes]
    successors: dict[str, list[Edge]] = {nid: [] for nid in node_ids}

    if not graph.edges:
        for i, (current, nxt) in enumerate(zip(node_ids, node_ids[1:])):
            successors[current].append(Edge(id=f"chain{i + 1}", source=current, target=nxt))
        return _Routing(successors, node_ids[:1], edge_errors, orphan_errors)

    has_incoming: set[str] = set()
    for edge in graph.edges:
        if edge.id in dangling:
            continue
        successors[edge.source].append(edge)
        has_incoming.add(edge.target)

    entries = [nid for nid in node_ids if nid not in has_incoming]
    if not entries:
        entries = node_ids[:1]
    return _Routing(successors, entries, edge_errors, orphan_errors)


def _select_targets(outgoing: list[Edge], output: Any) -> list[str]:
    if not any(e.condition for e in outgoing):
        return [e.target for e in outgoing]
    for edge in outgoing:
        if edge.matches(output):
            return [edge.target]
    return [outgoing[0].target]


def _join_errors(*parts: Any) -> str | None:
    flat: list[str] = []
    for part in parts:
        if not part:
            continue
        if isinstance(part, str):
            flat.append(part)
        else:
            flat.extend(part)
    return "; ".join(flat) or None


# ─── Executor ─────────────────────────────────────────────────────

class GraphStepper:
    """
    Executes a run's graph snapshot from its cursor (or from the start).

    The stepper appends to ``run.trail`` and ``run.tool_results`` in
    place; it never writes the run anywhere. Callers persist through the
    ``on_step`` callback and the returned StepOutcome.
    """

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        call_llm: Callable[[dict[str, Any]], Any] | None = None,
        store: Any = None,
        coordinator: Any = None,
        settings: Any = None,
    ):
        self.dispatcher = dispatcher
        self.call_llm = call_llm
        self.store = store
        self.coordinator = coordinator
        self.settings = settings

    def _max_rounds(self, graph: Graph) -> int:
        if graph.max_rounds:
            return graph.max_rounds
        configured = getattr(self.settings, "default_max_rounds", None)
        return int(configured) if configured else DEFAULT_MAX_ROUNDS

    def run(
        self,
        run: Any,
        is_cancelled: Callable[[], bool] = _never_cancelled,
        on_step: StepCallback | None = None,
        on_node_start: NodeStartCallback | None = None,
        run_logger: Any = None,
    ) -> StepOutcome:
        """
        Execute until the run completes, fails, pauses or is cancelled.

        Args:
            run: A coordinator.types.Run (duck-typed: graph_snapshot,
                agents_snapshot, trail, tool_results, cursor, initial_input)
            is_cancelled: Checked before every node turn
            on_step: Called after each step is appended to the trail
            on_node_start: Called with (node_id, round) before each turn
            run_logger: Optional engine.logging.RunLogger
        """
        graph = Graph.from_dict(run.graph_snapshot)
        fatal = [i for i in validate_graph(graph) if i.fatal]
        if fatal:
            message = "; ".join(i.message for i in fatal)
            logger.error("Run %s has an invalid graph: %s", run.id, message)
            return StepOutcome(
                status=RunStatus.FAILED,
                output={"error": message, "stack": ""},
                error=message,
            )

        routing = _build_routing(graph)
        max_rounds = self._max_rounds(graph)
        tctx = TurnContext(
            run_id=run.id,
            dispatcher=self.dispatcher,
            agents=run.agents_snapshot,
            tool_results=run.tool_results,
            call_llm=self.call_llm,
            turn_instruction=graph.turn_instruction,
            store=self.store,
            coordinator=self.coordinator,
            settings=self.settings,
            run_logger=run_logger,
        )

        cursor: ResumeCursor | None = run.cursor
        resume_prompt: dict[str, Any] | None = None
        if cursor is not None and cursor.queue:
            round_index = cursor.round
            queue = [list(p) for p in cursor.queue]
            carry = [list(p) for p in cursor.carry]
            visited = list(cursor.visited)
            last_output = cursor.last_output
            if cursor.has_user_response:
                queue[0][1] = cursor.user_response
                resume_prompt = cursor.prompt or {}
        else:
            round_index = 0
            queue = [[nid, run.initial_input] for nid in routing.entries]
            carry = []
            visited = []
            last_output = None

        attached: set[str] = set()
        steps_added = 0

        while True:
            while queue:
                node_id, node_input = queue.pop(0)
                if node_id in visited:
                    carry.append([node_id, node_input])
                    continue

                if is_cancelled():
                    logger.info("Run %s cancelled before node %s", run.id, node_id)
                    return StepOutcome(
                        status=RunStatus.CANCELLED,
                        output={"error": RUN_CANCELLED_MESSAGE},
                        steps_added=steps_added,
                        error=RUN_CANCELLED_MESSAGE,
                    )

                node = graph.node(node_id)
                visited.append(node_id)
                prior_prompt, resume_prompt = resume_prompt, None
                if on_node_start is not None:
                    on_node_start(node_id, round_index)
                if run_logger is not None:
                    run_logger.on_node_start(node_id, round_index)

                try:
                    turn = run_node_turn(node, node_input, tctx, prior_prompt)
                except GraphConfigError as e:
                    step = TrailStep(
                        order=len(run.trail), round=round_index, node_id=node_id,
                        agent_id=node.agent_id, input=node_input, error=str(e),
                    )
                    self._append(run, step, on_step, run_logger)
                    logger.error("Run %s: %s", run.id, e)
                    return StepOutcome(
                        status=RunStatus.FAILED,
                        output={"error": str(e), "stack": traceback.format_exc()},
                        steps_added=steps_added + 1,
                        error=str(e),
                    )
                except Exception as e:
                    logger.exception("Run %s failed at node %s", run.id, node_id)
                    return StepOutcome(
                        status=RunStatus.FAILED,
                        output={"error": str(e), "stack": traceback.format_exc()},
                        steps_added=steps_added,
                        error=str(e),
                    )

                targets = _select_targets(routing.successors.get(node_id, []), turn.output)
                edge_errors = routing.edge_errors.get(node_id)
                if edge_errors:
                    attached.add(node_id)
                error = _join_errors(turn.error, edge_errors)

                if turn.prompt is not None:
                    prompt = {**turn.prompt, "node_id": node_id}
                    step = TrailStep(
                        order=len(run.trail), round=round_index, node_id=node_id,
                        agent_id=turn.agent_id, agent_name=turn.agent_name,
                        input=node_input, output=turn.prompt, error=error,
                        tool_calls=tuple(turn.tool_calls), waiting_for_user=True,
                    )
                    self._append(run, step, on_step, run_logger)
                    visited.remove(node_id)
                    cursor = ResumeCursor(
                        round=round_index,
                        queue=[[node_id, node_input]] + queue,
                        carry=carry,
                        visited=visited,
                        last_output=last_output,
                        initial_input=run.initial_input,
                        prompt=prompt,
                    )
                    if run_logger is not None:
                        run_logger.on_run_paused(node_id, prompt.get("question", ""))
                    return StepOutcome(
                        status=RunStatus.WAITING_FOR_USER,
                        output={
                            "waiting_for_user": True,
                            "question": prompt.get("question", ""),
                            "options": prompt.get("options", []),
                            "node_id": node_id,
                        },
                        cursor=cursor,
                        steps_added=steps_added + 1,
                    )

                step = TrailStep(
                    order=len(run.trail), round=round_index, node_id=node_id,
                    agent_id=turn.agent_id, agent_name=turn.agent_name,
                    input=node_input, output=turn.output,
                    sent_to_node_id=targets[0] if targets else None,
                    error=error, tool_calls=tuple(turn.tool_calls),
                )
                self._append(run, step, on_step, run_logger)
                steps_added += 1
                last_output = turn.output

                for target in targets:
                    if target in visited or any(q[0] == target for q in queue):
                        carry.append([target, turn.output])
                    else:
                        queue.append([target, turn.output])

            round_index += 1
            if not carry or round_index >= max_rounds:
                break
            queue, carry, visited = carry, [], []

        output: dict[str, Any] = {"output": last_output}
        warnings = [
            m for nid, msgs in routing.edge_errors.items() if nid not in attached for m in msgs
        ] + routing.orphan_errors
        if carry:
            dropped = ", ".join(dict.fromkeys(str(p[0]) for p in carry))
            warnings.append(
                f"Round limit ({max_rounds}) reached; handoff(s) not run: {dropped}"
            )
            logger.warning("Run %s stopped at the round limit with pending handoffs to %s",
                           run.id, dropped, extra={"run_id": run.id})
        if warnings:
            output["warnings"] = warnings
        return StepOutcome(
            status=RunStatus.COMPLETED,
            output=output,
            steps_added=steps_added,
            warnings=warnings,
        )

    @staticmethod
    def _append(run, step: TrailStep, on_step, run_logger) -> None:
        run.trail.append(step)
        if run_logger is not None:
            run_logger.on_step_appended(step.order, step.node_id, step.error)
        if on_step is not None:
            on_step(step)
