"""Tests for jobpilot.intent: request classification and iteration budgets."""

import pytest

from jobpilot.config import IterationConfig
from jobpilot.intent import Intent, classify, is_simple_message, iteration_budget, score


class TestClassify:
    """Test weighted classification."""

    def test_greeting_is_casual(self):
        assert classify("hi") == Intent.CASUAL
        assert score("hi")[Intent.CASUAL] == 3

    def test_bug_report_is_fix(self):
        assert classify("fix the login bug in auth") == Intent.FIX
        assert score("fix the login bug in auth")[Intent.FIX] == 5

    def test_app_request_is_build(self):
        assert classify("build a todo app with auth") == Intent.BUILD
        assert score("build a todo app with auth")[Intent.BUILD] == 4

    def test_investigation_is_diagnostic(self):
        assert classify("investigate why the worker is slow") == Intent.DIAGNOSTIC

    def test_unmatched_defaults_to_build(self):
        assert classify("the quarterly numbers spreadsheet") == Intent.BUILD
        assert classify("") == Intent.BUILD

    def test_ties_follow_priority(self):
        # "add" (build 2) vs "error" (fix 2)
        assert classify("add error") == Intent.BUILD


class TestIterationBudget:
    """Test budget lookup per intent."""

    def test_defaults(self):
        iterations = IterationConfig()
        assert iteration_budget(Intent.BUILD, iterations) == 40
        assert iteration_budget(Intent.FIX, iterations) == 30
        assert iteration_budget(Intent.DIAGNOSTIC, iterations) == 25
        assert iteration_budget(Intent.CASUAL, iterations) == 5

    def test_configured(self):
        assert iteration_budget(Intent.FIX, IterationConfig(fix=7)) == 7


class TestSimpleMessage:
    """Test chit-chat detection."""

    @pytest.mark.parametrize("message", ["hi", "Hello!", "thanks", "ok", "who are you?", "cool"])
    def test_simple(self, message):
        assert is_simple_message(message) is True

    @pytest.mark.parametrize("message", [
        "fix it",
        "run tests",
        "build a todo app with auth",
        "the dashboard crashes on load",
    ])
    def test_not_simple(self, message):
        assert is_simple_message(message) is False
