"""
Relay — Tool Outcome Classification Tests

Tests:
  - is_failure over error / exitCode / statusCode / status shapes
  - failure_message wording
  - waiting-for-input detection for ask_user family and format_response
  - get_turn_status first-vs-last prompt selection
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.outcomes import (
    failure_message,
    get_turn_status,
    has_waiting_for_input,
    interactive_prompt,
    is_failure,
    is_waiting_for_input,
)


class TestIsFailure(unittest.TestCase):

    def test_none_and_non_mappings(self):
        self.assertFalse(is_failure(None))
        self.assertFalse(is_failure("boom"))
        self.assertFalse(is_failure(["error"]))
        self.assertFalse(is_failure(42))

    def test_error_string(self):
        self.assertTrue(is_failure({"error": "x"}))
        self.assertFalse(is_failure({"error": ""}))
        self.assertFalse(is_failure({"error": "   "}))
        self.assertFalse(is_failure({"error": None}))

    def test_exit_code(self):
        self.assertFalse(is_failure({"exitCode": 0}))
        self.assertTrue(is_failure({"exitCode": 1}))
        self.assertTrue(is_failure({"exitCode": -9}))

    def test_exit_code_bool_is_not_a_code(self):
        self.assertFalse(is_failure({"exitCode": True}))

    def test_status_codes(self):
        self.assertTrue(is_failure({"statusCode": 404}))
        self.assertTrue(is_failure({"statusCode": 500}))
        self.assertTrue(is_failure({"status": 503}))
        self.assertFalse(is_failure({"statusCode": 301}))
        self.assertFalse(is_failure({"statusCode": 200}))
        self.assertFalse(is_failure({"statusCode": 600}))

    def test_status_string_is_ignored(self):
        self.assertFalse(is_failure({"status": "failed"}))

    def test_unrecognized_shape_is_success(self):
        self.assertFalse(is_failure({"id": "wf_1", "message": "Workflow created"}))


class TestFailureMessage(unittest.TestCase):

    def test_success_has_no_message(self):
        self.assertEqual(failure_message({"ok": True}), "")

    def test_error_with_detail(self):
        msg = failure_message({"error": "Bad request", "message": "missing url"})
        self.assertEqual(msg, "Bad request: missing url")

    def test_exit_code_with_stderr(self):
        msg = failure_message({"exitCode": 2, "stderr": "no such file\n"})
        self.assertEqual(msg, "exited with code 2: no such file")

    def test_http_status(self):
        self.assertEqual(failure_message({"statusCode": 404}), "returned HTTP status 404")


class TestWaitingForInput(unittest.TestCase):

    def test_ask_user_waiting_flag(self):
        self.assertTrue(is_waiting_for_input("ask_user", {"waitingForUser": True}))

    def test_ask_user_with_options(self):
        self.assertTrue(is_waiting_for_input("ask_credentials", {"options": []}))

    def test_ask_user_without_markers(self):
        self.assertFalse(is_waiting_for_input("ask_user", {"question": "hi"}))

    def test_other_tool_never_waits(self):
        self.assertFalse(is_waiting_for_input("http_request", {"waitingForUser": True}))

    def test_format_response_needs_input(self):
        self.assertTrue(is_waiting_for_input(
            "format_response", {"formatted": True, "needsInput": "Which city?"},
        ))
        self.assertFalse(is_waiting_for_input(
            "format_response", {"formatted": True, "needsInput": "  "},
        ))
        self.assertFalse(is_waiting_for_input(
            "format_response", {"formatted": False, "needsInput": "Which city?"},
        ))

    def test_has_waiting_for_input(self):
        results = [
            {"name": "http_request", "result": {"statusCode": 200}},
            {"name": "ask_user", "result": {"waitingForUser": True, "question": "?"}},
        ]
        self.assertTrue(has_waiting_for_input(results))
        self.assertFalse(has_waiting_for_input(results[:1]))
        self.assertFalse(has_waiting_for_input(None))
        self.assertFalse(has_waiting_for_input("not a list"))


class TestInteractivePrompt(unittest.TestCase):

    def test_prompt_from_ask_user(self):
        prompt = interactive_prompt(
            "ask_user", {"waitingForUser": True, "question": "Pick one", "options": ["a", None, "b"]},
        )
        self.assertEqual(prompt, {"question": "Pick one", "options": ["a", "b"]})

    def test_prompt_from_format_response(self):
        prompt = interactive_prompt(
            "format_response", {"formatted": True, "needsInput": " Which city? ", "options": ["Paris"]},
        )
        self.assertEqual(prompt, {"question": "Which city?", "options": ["Paris"]})

    def test_no_prompt_for_plain_result(self):
        self.assertIsNone(interactive_prompt("ask_user", {"question": "?"}))


class TestTurnStatus(unittest.TestCase):

    RESULTS = [
        {"name": "ask_user", "result": {"waitingForUser": True, "question": "first"}},
        {"name": "ask_user", "result": {"waitingForUser": True, "question": "second"}},
    ]

    def test_completed_without_prompt(self):
        self.assertEqual(get_turn_status([]), {"status": "completed"})

    def test_first_prompt_by_default(self):
        status = get_turn_status(self.RESULTS)
        self.assertEqual(status["status"], "waiting_for_input")
        self.assertEqual(status["interactive_prompt"]["question"], "first")

    def test_last_prompt_when_requested(self):
        status = get_turn_status(self.RESULTS, use_last_ask_user=True)
        self.assertEqual(status["interactive_prompt"]["question"], "second")


if __name__ == "__main__":
    unittest.main()
