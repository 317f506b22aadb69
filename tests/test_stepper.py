"""
Relay — Graph Stepper Tests

Drives GraphStepper directly against in-memory runs with a scripted
call_llm, covering traversal order, rounds, pause/resume through the
cursor, cancellation checks, configuration errors and tool failures.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from coordinator.store import MemoryStore
from coordinator.types import Run
from engine.builtin_tools import register_builtin_tools
from engine.config import RuntimeSettings
from engine.state import RUN_CANCELLED_MESSAGE, RunStatus
from engine.stepper import GraphStepper
from engine.tools import ToolDispatcher


class ScriptedLLM:
    """call_llm stand-in: replays responses in order, records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        return response(request) if callable(response) else response


def tool_call(name, arguments, call_id="c1"):
    return {"content": "", "tool_calls": [{"id": call_id, "name": name, "arguments": arguments}]}


def tool_node(node_id, tool="echo"):
    return {"id": node_id, "type": "tool", "parameters": {"toolName": tool}}


def agent_node(node_id, agent_id):
    return {"id": node_id, "type": "agent", "parameters": {"agentId": agent_id}}


def make_run(graph, agents=None, initial_input=None):
    graph = {"id": "wf_test", "name": "test", **graph}
    return Run.create(
        graph_id=graph["id"],
        graph_snapshot=graph,
        agents_snapshot=agents or {},
        initial_input=initial_input,
    )


def make_dispatcher():
    dispatcher = register_builtin_tools(ToolDispatcher())
    dispatcher.register("echo", lambda args, ctx: {"echo": args.get("input")})
    return dispatcher


# ═══════════════════════════════════════════════════════════════════
# Traversal
# ═══════════════════════════════════════════════════════════════════

class TestTraversal(unittest.TestCase):

    def setUp(self):
        self.stepper = GraphStepper(make_dispatcher(), settings=RuntimeSettings())

    def test_no_edges_runs_linear_chain(self):
        run = make_run({"nodes": [tool_node("n1"), tool_node("n2"), tool_node("n3")], "edges": []},
                       initial_input="hi")
        outcome = self.stepper.run(run)
        self.assertEqual(outcome.status, RunStatus.COMPLETED)
        self.assertEqual([s.node_id for s in run.trail], ["n1", "n2", "n3"])
        self.assertEqual(run.trail[0].input, "hi")
        for prev, step in zip(run.trail, run.trail[1:]):
            self.assertEqual(step.input, prev.output)
        self.assertEqual(outcome.output, {"output": run.trail[-1].output})

    def test_sent_to_node_id(self):
        run = make_run({
            "nodes": [tool_node("a"), tool_node("b")],
            "edges": [{"source": "a", "target": "b"}],
        })
        self.stepper.run(run)
        self.assertEqual(run.trail[0].sent_to_node_id, "b")
        self.assertIsNone(run.trail[1].sent_to_node_id)

    def test_cycle_with_max_rounds(self):
        run = make_run({
            "nodes": [tool_node("a"), tool_node("b")],
            "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
            "max_rounds": 2,
        }, initial_input="x")
        outcome = self.stepper.run(run)
        self.assertEqual(outcome.status, RunStatus.COMPLETED)
        self.assertEqual([(s.node_id, s.round) for s in run.trail],
                         [("a", 0), ("b", 0), ("a", 1), ("b", 1)])
        self.assertEqual(outcome.steps_added, 4)

    def test_cycle_defaults_to_one_round(self):
        run = make_run({
            "nodes": [tool_node("a"), tool_node("b")],
            "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        })
        self.stepper.run(run)
        self.assertEqual([s.node_id for s in run.trail], ["a", "b"])

    def test_fan_in_cut_by_round_limit_is_reported(self):
        run = make_run({
            "nodes": [tool_node("a"), tool_node("b"), tool_node("c")],
            "edges": [{"source": "a", "target": "c"}, {"source": "b", "target": "c"}],
        }, initial_input="hi")
        outcome = self.stepper.run(run)
        self.assertEqual(outcome.status, RunStatus.COMPLETED)
        self.assertEqual([s.node_id for s in run.trail], ["a", "b", "c"])
        self.assertEqual(len(outcome.output["warnings"]), 1)
        self.assertIn("Round limit (1)", outcome.output["warnings"][0])
        self.assertIn("c", outcome.output["warnings"][0])
        self.assertEqual(outcome.warnings, outcome.output["warnings"])

    def test_run_ending_without_carry_has_no_warnings(self):
        run = make_run({
            "nodes": [tool_node("a"), tool_node("b")],
            "edges": [{"source": "a", "target": "b"}],
        })
        outcome = self.stepper.run(run)
        self.assertNotIn("warnings", outcome.output)

    def test_default_max_rounds_from_settings(self):
        stepper = GraphStepper(make_dispatcher(), settings=RuntimeSettings(default_max_rounds=3))
        run = make_run({
            "nodes": [tool_node("a"), tool_node("b")],
            "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        })
        stepper.run(run)
        self.assertEqual(len(run.trail), 6)

    def test_fan_out_in_edge_order(self):
        run = make_run({
            "nodes": [tool_node("root"), tool_node("left"), tool_node("right")],
            "edges": [{"source": "root", "target": "right"}, {"source": "root", "target": "left"}],
        })
        self.stepper.run(run)
        self.assertEqual([s.node_id for s in run.trail], ["root", "right", "left"])
        self.assertEqual(run.trail[1].input, run.trail[0].output)
        self.assertEqual(run.trail[2].input, run.trail[0].output)

    def test_conditional_edge_content_contains(self):
        run = make_run({
            "nodes": [tool_node("root"), tool_node("billing"), tool_node("support")],
            "edges": [
                {"source": "root", "target": "billing",
                 "condition": {"type": "content_contains", "value": "INVOICE"}},
                {"source": "root", "target": "support",
                 "condition": {"type": "content_contains", "value": "refund"}},
            ],
        }, initial_input="I want a Refund")
        self.stepper.run(run)
        self.assertEqual([s.node_id for s in run.trail], ["root", "support"])
        self.assertEqual(run.trail[0].sent_to_node_id, "support")

    def test_conditional_edge_falls_back_to_first(self):
        run = make_run({
            "nodes": [tool_node("root"), tool_node("billing"), tool_node("support")],
            "edges": [
                {"source": "root", "target": "billing",
                 "condition": {"type": "content_contains", "value": "invoice"}},
                {"source": "root", "target": "support",
                 "condition": {"type": "content_contains", "value": "refund"}},
            ],
        }, initial_input="hello")
        self.stepper.run(run)
        self.assertEqual([s.node_id for s in run.trail], ["root", "billing"])

    def test_conditional_edge_message_type(self):
        dispatcher = make_dispatcher()
        dispatcher.register("classify", lambda args, ctx: {"type": "question"})
        stepper = GraphStepper(dispatcher, settings=RuntimeSettings())
        run = make_run({
            "nodes": [tool_node("root", "classify"), tool_node("answer"), tool_node("act")],
            "edges": [
                {"source": "root", "target": "act",
                 "condition": {"type": "message_type", "value": "action"}},
                {"source": "root", "target": "answer",
                 "condition": {"type": "message_type", "value": "question"}},
            ],
        })
        stepper.run(run)
        self.assertEqual([s.node_id for s in run.trail], ["root", "answer"])
        self.assertEqual(run.trail[1].input, {"type": "question"})

    def test_multiple_entry_nodes(self):
        run = make_run({
            "nodes": [tool_node("a"), tool_node("b"), tool_node("c")],
            "edges": [{"source": "a", "target": "c"}],
        }, initial_input="start")
        self.stepper.run(run)
        self.assertEqual([s.node_id for s in run.trail], ["a", "b", "c"])
        self.assertEqual(run.trail[1].input, "start")

    def test_trail_orders_are_contiguous(self):
        run = make_run({"nodes": [tool_node("n1"), tool_node("n2")], "edges": []})
        self.stepper.run(run)
        self.assertEqual([s.order for s in run.trail], [0, 1])

    def test_on_step_and_on_node_start_callbacks(self):
        seen_steps, started = [], []
        run = make_run({"nodes": [tool_node("n1"), tool_node("n2")], "edges": []})
        self.stepper.run(
            run,
            on_step=lambda step: seen_steps.append(step.node_id),
            on_node_start=lambda node_id, rnd: started.append((node_id, rnd)),
        )
        self.assertEqual(seen_steps, ["n1", "n2"])
        self.assertEqual(started, [("n1", 0), ("n2", 0)])


# ═══════════════════════════════════════════════════════════════════
# Agent turns
# ═══════════════════════════════════════════════════════════════════

AGENTS = {
    "ag_a": {"id": "ag_a", "name": "Agent A", "system_prompt": "You are A"},
    "ag_b": {"id": "ag_b", "name": "Agent B", "system_prompt": "You are B"},
}


def answer_as_agent(request):
    system = request["messages"][0]["content"]
    user = request["messages"][-1]["content"]
    return f"{system[-1]} saw: {user}"


class TestAgentTurns(unittest.TestCase):

    def test_output_handed_to_successor(self):
        llm = ScriptedLLM(answer_as_agent, answer_as_agent)
        stepper = GraphStepper(make_dispatcher(), call_llm=llm, settings=RuntimeSettings())
        run = make_run({
            "nodes": [agent_node("a", "ag_a"), agent_node("b", "ag_b")],
            "edges": [{"source": "a", "target": "b"}],
        }, agents=AGENTS, initial_input="hello")
        outcome = stepper.run(run)

        self.assertEqual(outcome.status, RunStatus.COMPLETED)
        self.assertEqual(run.trail[0].output, "A saw: hello")
        self.assertEqual(run.trail[0].agent_name, "Agent A")
        self.assertEqual(run.trail[1].input, run.trail[0].output)
        self.assertEqual(run.trail[1].output, "B saw: A saw: hello")

    def test_turn_instruction_added(self):
        llm = ScriptedLLM("ok")
        stepper = GraphStepper(make_dispatcher(), call_llm=llm, settings=RuntimeSettings())
        run = make_run({
            "nodes": [agent_node("a", "ag_a")], "edges": [],
            "turn_instruction": "Answer in one line.",
        }, agents=AGENTS)
        stepper.run(run)
        roles = [(m["role"], m["content"]) for m in llm.requests[0]["messages"]]
        self.assertIn(("system", "Answer in one line."), roles)

    def test_interaction_tools_always_offered(self):
        llm = ScriptedLLM("ok")
        stepper = GraphStepper(make_dispatcher(), call_llm=llm, settings=RuntimeSettings())
        run = make_run({"nodes": [agent_node("a", "ag_a")], "edges": []}, agents=AGENTS)
        stepper.run(run)
        offered = {t["name"] for t in llm.requests[0]["tools"]}
        self.assertTrue({"ask_user", "format_response"} <= offered)

    def test_placeholders_resolved_within_turn(self):
        store = MemoryStore()
        agents = {"ag_p": {"id": "ag_p", "name": "Planner",
                           "tool_ids": ["create_workflow", "get_workflow"]}}
        llm = ScriptedLLM(
            {"content": "", "tool_calls": [
                {"id": "c1", "name": "create_workflow", "arguments": {"name": "Weather"}},
                {"id": "c2", "name": "get_workflow", "arguments": '{"id": "{{create_workflow.id}}"}'},
            ]},
            "Created the Weather workflow",
        )
        stepper = GraphStepper(make_dispatcher(), call_llm=llm, store=store, settings=RuntimeSettings())
        run = make_run({"nodes": [agent_node("p", "ag_p")], "edges": []}, agents=agents)
        outcome = stepper.run(run)

        self.assertEqual(outcome.status, RunStatus.COMPLETED)
        created_id = run.tool_results[0]["result"]["id"]
        self.assertEqual(run.tool_results[1]["args"], {"id": created_id})
        self.assertEqual(run.tool_results[1]["result"]["name"], "Weather")
        tool_messages = [m for m in llm.requests[1]["messages"] if m["role"] == "tool"]
        self.assertEqual(len(tool_messages), 2)
        self.assertEqual(run.trail[0].output, "Created the Weather workflow")
        self.assertEqual(len(run.trail[0].tool_calls), 2)

    def test_disallowed_tool_is_recorded_as_failure(self):
        llm = ScriptedLLM(tool_call("http_request", {"url": "https://example.com"}), "gave up")
        stepper = GraphStepper(make_dispatcher(), call_llm=llm, settings=RuntimeSettings())
        run = make_run({"nodes": [agent_node("a", "ag_a")], "edges": []}, agents=AGENTS)
        outcome = stepper.run(run)
        self.assertEqual(outcome.status, RunStatus.COMPLETED)
        self.assertIn("not available to this agent", run.trail[0].error)

    def test_tool_round_limit(self):
        summary = tool_call("format_response", {"summary": "partial answer"})
        llm = ScriptedLLM(summary, summary)
        stepper = GraphStepper(make_dispatcher(), call_llm=llm,
                               settings=RuntimeSettings(max_tool_rounds=2))
        run = make_run({"nodes": [agent_node("a", "ag_a")], "edges": []}, agents=AGENTS)
        stepper.run(run)
        self.assertEqual(len(llm.requests), 2)
        self.assertIn("exceeded 2 tool rounds", run.trail[0].error)
        self.assertEqual(run.trail[0].output, "partial answer")


# ═══════════════════════════════════════════════════════════════════
# Pause and resume
# ═══════════════════════════════════════════════════════════════════

class TestPauseResume(unittest.TestCase):

    def setUp(self):
        self.llm = ScriptedLLM(
            tool_call("ask_user", {"question": "Which city?", "options": ["Paris", "Rome"]}),
            lambda request: "Weather for " + request["messages"][-1]["content"].split(": ")[-1],
            answer_as_agent,
        )
        self.stepper = GraphStepper(make_dispatcher(), call_llm=self.llm, settings=RuntimeSettings())
        self.run_ = make_run({
            "nodes": [agent_node("a", "ag_a"), agent_node("b", "ag_b")],
            "edges": [{"source": "a", "target": "b"}],
        }, agents=AGENTS, initial_input="weather please")

    def test_pause_returns_prompt_and_cursor(self):
        outcome = self.stepper.run(self.run_)
        self.assertEqual(outcome.status, RunStatus.WAITING_FOR_USER)
        self.assertTrue(outcome.paused)
        self.assertEqual(outcome.output, {
            "waiting_for_user": True, "question": "Which city?",
            "options": ["Paris", "Rome"], "node_id": "a",
        })
        self.assertEqual(outcome.cursor.paused_node_id, "a")
        self.assertEqual(len(self.run_.trail), 1)
        self.assertTrue(self.run_.trail[0].waiting_for_user)

    def test_resume_reenters_paused_node_with_response(self):
        outcome = self.stepper.run(self.run_)
        self.run_.cursor = outcome.cursor
        self.run_.cursor.user_response = "Paris"
        self.run_.cursor.has_user_response = True

        outcome = self.stepper.run(self.run_)
        self.assertEqual(outcome.status, RunStatus.COMPLETED)
        self.assertEqual([s.node_id for s in self.run_.trail], ["a", "a", "b"])
        resumed = self.run_.trail[1]
        self.assertEqual(resumed.input, "Paris")
        self.assertEqual(resumed.output, "Weather for Paris")
        self.assertEqual(self.run_.trail[2].input, "Weather for Paris")

        user_message = self.llm.requests[1]["messages"][-1]["content"]
        self.assertIn("You asked the user: Which city?", user_message)
        self.assertIn("The user replied: Paris", user_message)

    def test_tool_node_resume_outputs_response(self):
        stepper = GraphStepper(make_dispatcher(), settings=RuntimeSettings())
        ask = {"id": "q", "type": "tool",
               "parameters": {"toolName": "ask_user", "args": {"question": "Proceed?"}}}
        run = make_run({"nodes": [ask, tool_node("n")],
                        "edges": [{"source": "q", "target": "n"}]})
        outcome = stepper.run(run)
        self.assertTrue(outcome.paused)
        self.assertEqual(outcome.output["question"], "Proceed?")

        run.cursor = outcome.cursor
        run.cursor.user_response = "yes"
        run.cursor.has_user_response = True
        outcome = stepper.run(run)
        self.assertEqual(outcome.status, RunStatus.COMPLETED)
        self.assertEqual(run.trail[1].output, "yes")
        self.assertEqual(run.trail[2].output, {"echo": "yes"})


# ═══════════════════════════════════════════════════════════════════
# Cancellation and errors
# ═══════════════════════════════════════════════════════════════════

class TestCancellation(unittest.TestCase):

    def test_cancel_before_first_turn(self):
        stepper = GraphStepper(make_dispatcher(), settings=RuntimeSettings())
        run = make_run({"nodes": [tool_node("a")], "edges": []})
        outcome = stepper.run(run, is_cancelled=lambda: True)
        self.assertEqual(outcome.status, RunStatus.CANCELLED)
        self.assertEqual(outcome.output, {"error": RUN_CANCELLED_MESSAGE})
        self.assertEqual(run.trail, [])

    def test_cancel_during_turn_keeps_last_step(self):
        flag = {"cancelled": False}

        def cancel_now(args, ctx):
            flag["cancelled"] = True
            return {"done": True}

        dispatcher = make_dispatcher()
        dispatcher.register("cancel_now", cancel_now)
        stepper = GraphStepper(dispatcher, settings=RuntimeSettings())
        run = make_run({
            "nodes": [tool_node("a", "cancel_now"), tool_node("b")],
            "edges": [{"source": "a", "target": "b"}],
        })
        outcome = stepper.run(run, is_cancelled=lambda: flag["cancelled"])
        self.assertEqual(outcome.status, RunStatus.CANCELLED)
        self.assertEqual([s.node_id for s in run.trail], ["a"])
        self.assertEqual(run.trail[0].output, {"done": True})


class TestErrors(unittest.TestCase):

    def test_invalid_graph_fails(self):
        stepper = GraphStepper(make_dispatcher(), settings=RuntimeSettings())
        run = make_run({"nodes": [tool_node("a"), tool_node("a")], "edges": []})
        outcome = stepper.run(run)
        self.assertEqual(outcome.status, RunStatus.FAILED)
        self.assertIn("Duplicate node id", outcome.output["error"])
        self.assertEqual(run.trail, [])

    def test_empty_graph_fails(self):
        outcome = GraphStepper(make_dispatcher()).run(make_run({"nodes": [], "edges": []}))
        self.assertEqual(outcome.status, RunStatus.FAILED)

    def test_missing_agent_appends_error_step(self):
        stepper = GraphStepper(make_dispatcher(), call_llm=ScriptedLLM(), settings=RuntimeSettings())
        run = make_run({"nodes": [agent_node("a", "ghost")], "edges": []})
        outcome = stepper.run(run)
        self.assertEqual(outcome.status, RunStatus.FAILED)
        self.assertEqual(len(run.trail), 1)
        self.assertIn("not found", run.trail[0].error)
        self.assertIn("stack", outcome.output)

    def test_agent_without_llm_fails(self):
        stepper = GraphStepper(make_dispatcher(), settings=RuntimeSettings())
        run = make_run({"nodes": [agent_node("a", "ag_a")], "edges": []}, agents=AGENTS)
        outcome = stepper.run(run)
        self.assertEqual(outcome.status, RunStatus.FAILED)
        self.assertIn("No LLM configured", outcome.error)

    def test_unknown_node_type_fails(self):
        stepper = GraphStepper(make_dispatcher(), settings=RuntimeSettings())
        run = make_run({"nodes": [{"id": "x", "type": "webhook"}], "edges": []})
        outcome = stepper.run(run)
        self.assertEqual(outcome.status, RunStatus.FAILED)
        self.assertIn("Unknown node type", run.trail[0].error)

    def test_tool_exception_fails_run_with_stack(self):
        def boom(args, ctx):
            raise ValueError("kaboom")

        dispatcher = make_dispatcher()
        dispatcher.register("boom", boom)
        run = make_run({"nodes": [tool_node("a", "boom")], "edges": []})
        outcome = GraphStepper(dispatcher, settings=RuntimeSettings()).run(run)
        self.assertEqual(outcome.status, RunStatus.FAILED)
        self.assertIn("Tool 'boom' failed: kaboom", outcome.output["error"])
        self.assertIn("Traceback", outcome.output["stack"])

    def test_failed_tool_result_recorded_but_run_continues(self):
        dispatcher = make_dispatcher()
        dispatcher.register("http_fail", lambda args, ctx: {"statusCode": 500})
        run = make_run({
            "nodes": [tool_node("a", "http_fail"), tool_node("b")],
            "edges": [{"source": "a", "target": "b"}],
        })
        outcome = GraphStepper(dispatcher, settings=RuntimeSettings()).run(run)
        self.assertEqual(outcome.status, RunStatus.COMPLETED)
        self.assertEqual(run.trail[0].error, "http_fail: returned HTTP status 500")
        self.assertEqual(len(run.trail), 2)

    def test_dangling_edges_reported(self):
        run = make_run({
            "nodes": [tool_node("a"), tool_node("b")],
            "edges": [
                {"id": "e1", "source": "a", "target": "b"},
                {"id": "e2", "source": "a", "target": "ghost"},
                {"id": "e3", "source": "nowhere", "target": "ghost"},
            ],
        })
        outcome = GraphStepper(make_dispatcher(), settings=RuntimeSettings()).run(run)
        self.assertEqual(outcome.status, RunStatus.COMPLETED)
        self.assertEqual([s.node_id for s in run.trail], ["a", "b"])
        self.assertIn("e2", run.trail[0].error)
        self.assertEqual(len(outcome.output["warnings"]), 1)
        self.assertIn("e3", outcome.output["warnings"][0])


if __name__ == "__main__":
    unittest.main()
