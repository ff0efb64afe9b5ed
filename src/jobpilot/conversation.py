"""Append-only conversation log and tool-call pairing.

Turns are plain dicts in the provider's message shape
(``{"role": ..., "content": ...}``) plus a ``kind`` tag so the loop can
tell a user request from a tool-results turn or an injected guidance note.
Turns are never edited once appended; the token guard works on copies.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from jobpilot.errors import PairingError

KIND_REQUEST = "request"
KIND_ASSISTANT = "assistant"
KIND_TOOL_RESULTS = "tool_results"
KIND_GUIDANCE = "guidance"
KIND_NOTE = "note"


@dataclass(frozen=True)
class ToolCall:
    """One ``tool_use`` block from an assistant turn."""

    id: str
    name: str
    input: dict[str, Any]

    def to_block(self) -> dict:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResult:
    """The single result paired with a ToolCall."""

    tool_use_id: str
    content: str
    is_error: bool = False

    def to_block(self) -> dict:
        block = {"type": "tool_result", "tool_use_id": self.tool_use_id, "content": self.content}
        if self.is_error:
            block["is_error"] = True
        return block


@dataclass
class ConversationLog:
    """Ordered, append-only list of turns."""

    turns: list[dict] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.turns)

    def append(self, role: str, content: str | list[dict], kind: str) -> dict:
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid role: {role}")
        turn = {"role": role, "content": copy.deepcopy(content), "kind": kind}
        self.turns.append(turn)
        return turn

    def append_request(self, text: str) -> dict:
        return self.append("user", text, KIND_REQUEST)

    def append_assistant(self, blocks: list[dict]) -> dict:
        return self.append("assistant", blocks, KIND_ASSISTANT)

    def append_tool_results(self, results: list[ToolResult]) -> dict:
        return self.append("user", [r.to_block() for r in results], KIND_TOOL_RESULTS)

    def append_guidance(self, text: str) -> dict:
        return self.append("user", text, KIND_GUIDANCE)

    def append_note(self, text: str) -> dict:
        return self.append("user", text, KIND_NOTE)

    def messages(self) -> list[dict]:
        """Deep copy of all turns, safe to hand to the guard."""
        return copy.deepcopy(self.turns)

    @property
    def last(self) -> dict | None:
        return self.turns[-1] if self.turns else None

    def to_list(self) -> list[dict]:
        return copy.deepcopy(self.turns)

    @classmethod
    def from_list(cls, turns: list[dict]) -> ConversationLog:
        return cls(turns=copy.deepcopy(turns))


def tool_calls_in(blocks: list[dict]) -> list[ToolCall]:
    """Extract ToolCalls from assistant content blocks, in order."""
    return [
        ToolCall(id=b["id"], name=b["name"], input=dict(b.get("input") or {}))
        for b in blocks
        if b.get("type") == "tool_use"
    ]


def text_in(content: str | list[dict]) -> str:
    """Concatenate the text blocks of a turn."""
    if isinstance(content, str):
        return content
    return "\n".join(b.get("text", "") for b in content if b.get("type") == "text")


def check_pairing(calls: list[ToolCall], results: list[ToolResult]) -> None:
    """Raise PairingError unless every call has exactly one result."""
    call_ids = [c.id for c in calls]
    result_ids = [r.tool_use_id for r in results]
    if len(set(call_ids)) != len(call_ids):
        raise PairingError(f"Duplicate tool_use ids: {call_ids}")
    if sorted(call_ids) != sorted(result_ids):
        missing = set(call_ids) - set(result_ids)
        extra = set(result_ids) - set(call_ids)
        raise PairingError(
            f"Tool results do not pair with calls (missing={sorted(missing)}, extra={sorted(extra)})"
        )


def to_provider_messages(turns: list[dict]) -> list[dict]:
    """Strip ``kind`` tags and merge consecutive same-role turns.

    The Messages API wants strictly alternating roles; a guidance note that
    follows a tool-results turn becomes a trailing text block of the same
    user message, after the tool_result blocks.
    """
    merged: list[dict] = []
    for turn in turns:
        blocks = _as_blocks(turn["content"])
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1]["content"].extend(blocks)
        else:
            merged.append({"role": turn["role"], "content": list(blocks)})
    return merged


def _as_blocks(content: str | list[dict]) -> list[dict]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return copy.deepcopy(content)
