"""
Relay — Structured Logging Tests

JSON line output, extra={} fields, and the per-run RunLogger actions.
"""

import io
import json
import logging
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.logging import (
    RunLogger, configure_logging, generate_span_id, generate_trace_id, get_logger,
)


class LoggingTestCase(unittest.TestCase):

    level = "INFO"

    def setUp(self):
        self.stream = io.StringIO()
        configure_logging(level=self.level, stream=self.stream)

    def tearDown(self):
        logging.getLogger("relay").handlers.clear()

    def lines(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines() if line]


class TestJSONOutput(LoggingTestCase):

    def test_module_logger_line(self):
        get_logger("coordinator").info("Run %s started", "run_1", extra={"run_id": "run_1"})
        (entry,) = self.lines()
        self.assertEqual(entry["message"], "Run run_1 started")
        self.assertEqual(entry["level"], "INFO")
        self.assertEqual(entry["logger"], "relay.coordinator")
        self.assertEqual(entry["run_id"], "run_1")
        self.assertEqual(entry["service.name"], "relay")

    def test_level_filters(self):
        get_logger("x").debug("hidden")
        get_logger("x").warning("shown")
        self.assertEqual([e["message"] for e in self.lines()], ["shown"])

    def test_exception_fields(self):
        try:
            raise ValueError("bad input")
        except ValueError:
            get_logger("x").exception("failed")
        (entry,) = self.lines()
        self.assertEqual(entry["exception.type"], "ValueError")
        self.assertEqual(entry["exception.message"], "bad input")

    def test_reconfigure_replaces_handler(self):
        second = io.StringIO()
        configure_logging(level="INFO", stream=second)
        get_logger("x").info("once")
        self.assertEqual(self.stream.getvalue(), "")
        self.assertEqual(len(second.getvalue().splitlines()), 1)
        self.assertEqual(len(logging.getLogger("relay").handlers), 1)


class TestRunLogger(LoggingTestCase):

    def test_trace_id_defaults_to_run_id(self):
        self.assertEqual(RunLogger(run_id="run_1").trace_id, "run_1")
        self.assertEqual(len(RunLogger().trace_id), 32)

    def test_lifecycle_actions(self):
        log = RunLogger(run_id="run_1", graph_id="wf_1")
        log.on_run_start()
        log.on_node_start("a", round_index=1)
        log.on_step_appended(1, "a")
        log.on_run_paused("a", "Which city?")
        log.on_run_start(resumed=True)
        log.on_run_end("completed", 1.234, steps=2)

        entries = self.lines()
        self.assertEqual([e["action"] for e in entries], [
            "run_start", "node_start", "step_appended", "run_paused", "run_resume", "run_end",
        ])
        for entry in entries:
            self.assertEqual(entry["trace_id"], "run_1")
            self.assertEqual(entry["graph_id"], "wf_1")
        self.assertEqual(entries[2]["order"], 1)
        self.assertEqual(entries[3]["question"], "Which city?")
        self.assertEqual(entries[-1]["elapsed_s"], 1.23)
        self.assertEqual(entries[-1]["steps"], 2)

    def test_tool_call_shares_node_span(self):
        log = RunLogger(run_id="run_1")
        log.on_node_start("a", round_index=1)
        log.on_tool_call("a", "http_request", failed=False, elapsed_ms=12.34)
        start, call = self.lines()
        self.assertEqual(call["span_id"], start["span_id"])
        self.assertEqual(call["tool"], "http_request")
        self.assertEqual(call["latency_ms"], 12.3)
        self.assertEqual(call["level"], "INFO")

    def test_failed_tool_call_is_warning(self):
        RunLogger(run_id="run_1").on_tool_call("a", "boom", failed=True, elapsed_ms=1.0)
        (entry,) = self.lines()
        self.assertEqual(entry["level"], "WARNING")
        self.assertTrue(entry["failed"])

    def test_failed_run_end_is_error(self):
        RunLogger(run_id="run_1").on_run_end("failed", 0.5, error="x" * 600)
        (entry,) = self.lines()
        self.assertEqual(entry["level"], "ERROR")
        self.assertEqual(len(entry["error"]), 500)


class TestDebugLevel(LoggingTestCase):

    level = "DEBUG"

    def test_full_tool_call_at_debug(self):
        RunLogger(run_id="run_1").on_tool_call(
            "a", "echo", failed=False, elapsed_ms=1.0, args={"input": "hi"}, result={"echo": "hi"},
        )
        entries = self.lines()
        self.assertEqual([e["action"] for e in entries], ["tool_call", "tool_call_full"])
        self.assertEqual(entries[1]["args"], {"input": "hi"})
        self.assertEqual(entries[1]["result"], {"echo": "hi"})


class TestIds(unittest.TestCase):

    def test_id_lengths(self):
        self.assertEqual(len(generate_trace_id()), 32)
        self.assertEqual(len(generate_span_id()), 16)


if __name__ == "__main__":
    unittest.main()
