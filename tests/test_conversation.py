"""Tests for jobpilot.conversation: the turn log and tool-call pairing."""

import pytest

from jobpilot.conversation import (
    KIND_GUIDANCE,
    KIND_TOOL_RESULTS,
    ConversationLog,
    ToolCall,
    ToolResult,
    check_pairing,
    text_in,
    to_provider_messages,
    tool_calls_in,
)
from jobpilot.errors import PairingError


class TestConversationLog:
    """Test the append-only log."""

    def test_turns_keep_order_and_kind(self):
        log = ConversationLog()
        log.append_request("add a feature")
        log.append_assistant([{"type": "text", "text": "ok"}])
        log.append_tool_results([ToolResult("t1", "done")])
        log.append_guidance("follow the workflow")
        assert [t["role"] for t in log.turns] == ["user", "assistant", "user", "user"]
        assert log.turns[2]["kind"] == KIND_TOOL_RESULTS
        assert log.last["kind"] == KIND_GUIDANCE

    def test_messages_are_copies(self):
        log = ConversationLog()
        log.append_assistant([{"type": "text", "text": "original"}])
        view = log.messages()
        view[0]["content"][0]["text"] = "changed"
        assert log.turns[0]["content"][0]["text"] == "original"

    def test_rejects_unknown_role(self):
        with pytest.raises(ValueError):
            ConversationLog().append("system", "x", "note")

    def test_round_trip_through_list(self):
        log = ConversationLog()
        log.append_request("hello there")
        restored = ConversationLog.from_list(log.to_list())
        assert restored.turns == log.turns


class TestPairing:
    """Test the one-result-per-call invariant."""

    def test_matching_results_pass(self):
        calls = [ToolCall("a", "read_file", {}), ToolCall("b", "list_files", {})]
        check_pairing(calls, [ToolResult("b", ""), ToolResult("a", "")])

    def test_missing_result_raises(self):
        with pytest.raises(PairingError, match="missing"):
            check_pairing([ToolCall("a", "read_file", {})], [])

    def test_duplicate_ids_raise(self):
        calls = [ToolCall("a", "read_file", {}), ToolCall("a", "list_files", {})]
        with pytest.raises(PairingError):
            check_pairing(calls, [ToolResult("a", ""), ToolResult("a", "")])

    def test_error_flag_only_on_errors(self):
        assert "is_error" not in ToolResult("a", "fine").to_block()
        assert ToolResult("a", "bad", is_error=True).to_block()["is_error"] is True


class TestProviderMessages:
    """Test conversion to the Messages API shape."""

    def test_consecutive_user_turns_merge(self):
        log = ConversationLog()
        log.append_request("do it")
        log.append_assistant([{"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a"}}])
        log.append_tool_results([ToolResult("t1", "body")])
        log.append_guidance("strike 1")
        messages = to_provider_messages(log.messages())
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert [b["type"] for b in messages[2]["content"]] == ["tool_result", "text"]
        assert all("kind" not in m for m in messages)

    def test_extract_calls_and_text(self):
        blocks = [
            {"type": "text", "text": "Reading"},
            {"type": "tool_use", "id": "t9", "name": "read_file", "input": {"path": "x.py"}},
        ]
        assert tool_calls_in(blocks) == [ToolCall("t9", "read_file", {"path": "x.py"})]
        assert text_in(blocks) == "Reading"
        assert text_in("plain") == "plain"
