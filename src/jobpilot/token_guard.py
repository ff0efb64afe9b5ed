"""Token budget guard: keep every LM request under the context limit.

Estimation is deliberately pessimistic (3 characters per token, rounded
up, fixed cost per image) so the provider's real count stays below ours.
Reduction happens in two stages:

1. Oversized text blocks are cut in place, keeping head and tail.
2. Oldest messages are dropped, down to a single message if necessary.

The caller's list is never touched; ``fit()`` returns a new view.
"""

from __future__ import annotations

import copy
import json
import logging
import math
from dataclasses import dataclass

from jobpilot.errors import UnreducibleOverflowError

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 3.0
IMAGE_TOKENS = 1600
MIN_MESSAGE_TOKENS = 100
DEFAULT_SAFETY_MARGIN_RATIO = 0.125
TRUNCATION_MARKER = "\n\n[... content truncated ...]\n\n"
ORPHAN_RESULT_PREFIX = "[result of an earlier tool call] "


def estimate_text(text: str) -> int:
    """Conservative token estimate for a string."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_block(block: dict) -> int:
    kind = block.get("type")
    if kind == "text":
        return estimate_text(block.get("text", ""))
    if kind == "image":
        return IMAGE_TOKENS
    if kind == "tool_use":
        return estimate_text(block.get("name", "") + json.dumps(block.get("input") or {}))
    if kind == "tool_result":
        content = block.get("content", "")
        if isinstance(content, list):
            return sum(estimate_block(b) for b in content)
        return estimate_text(str(content))
    return estimate_text(json.dumps(block))


def estimate_message(message: dict) -> int:
    content = message.get("content", "")
    if isinstance(content, str):
        return estimate_text(content)
    return sum(estimate_block(b) for b in content)


def estimate_messages(messages: list[dict]) -> int:
    return sum(estimate_message(m) for m in messages)


def truncate_text(text: str, max_tokens: int) -> str:
    """Cut ``text`` to at most ``max_tokens`` estimated tokens.

    Keeps the first 60% and last 40% of the usable characters with a
    marker in between.
    """
    if estimate_text(text) <= max_tokens:
        return text
    if max_tokens <= 0:
        return ""
    marker_tokens = estimate_text(TRUNCATION_MARKER)
    if max_tokens <= marker_tokens:
        return text[: int(max_tokens * CHARS_PER_TOKEN)]
    usable_chars = int((max_tokens - marker_tokens) * CHARS_PER_TOKEN)
    keep_start = int(usable_chars * 0.6)
    keep_end = int(usable_chars * 0.4)
    return text[:keep_start] + TRUNCATION_MARKER + text[len(text) - keep_end:]


@dataclass
class GuardResult:
    """A bounded view of the conversation."""

    messages: list[dict]
    truncated: bool
    estimated_tokens: int
    dropped: int = 0


class TokenBudgetGuard:
    """Fits conversations under ``provider_limit - safety_margin``."""

    def __init__(
        self,
        provider_limit: int,
        safety_margin: int | None = None,
        *,
        min_recent_messages: int = 6,
        max_block_tokens: int = 20_000,
    ):
        if safety_margin is None:
            safety_margin = round(provider_limit * DEFAULT_SAFETY_MARGIN_RATIO)
        if safety_margin >= provider_limit:
            raise ValueError("Safety margin must be smaller than the provider limit")
        self.provider_limit = provider_limit
        self.safety_margin = safety_margin
        self.min_recent_messages = max(1, min_recent_messages)
        self.max_block_tokens = max_block_tokens

    @classmethod
    def from_config(cls, config, model: str | None = None) -> TokenBudgetGuard:
        """Build from a ``JobPilotConfig``."""
        return cls(
            config.provider.context_limit(model),
            config.provider.safety_margin(model),
            min_recent_messages=config.loop.min_recent_messages,
            max_block_tokens=config.loop.max_block_tokens,
        )

    @property
    def max_context_tokens(self) -> int:
        return self.provider_limit - self.safety_margin

    def tighten(self, extra_tokens: int) -> TokenBudgetGuard:
        """A copy of this guard with a larger safety margin."""
        margin = min(self.safety_margin + extra_tokens, self.provider_limit - 1)
        return TokenBudgetGuard(
            self.provider_limit,
            margin,
            min_recent_messages=self.min_recent_messages,
            max_block_tokens=self.max_block_tokens,
        )

    def fit(self, messages: list[dict], preamble: str = "") -> GuardResult:
        budget = self.max_context_tokens
        preamble_tokens = estimate_text(preamble)
        if preamble_tokens > budget:
            raise UnreducibleOverflowError(preamble_tokens, budget)

        view = copy.deepcopy(messages)
        total = preamble_tokens + estimate_messages(view)
        if total <= budget:
            return GuardResult(view, False, total)

        logger.info("Context over budget (%d > %d), truncating", total, budget)
        view = [self._cap_blocks(m, self.max_block_tokens) for m in view]
        total = preamble_tokens + estimate_messages(view)
        if total <= budget:
            return GuardResult(view, True, total)

        dropped = 0
        floor = min(self.min_recent_messages, len(view))
        for keep_at_least in (floor, 1):
            while total > budget and len(view) > keep_at_least:
                view.pop(0)
                dropped += 1
                dropped += self._repair_head(view)
                total = preamble_tokens + estimate_messages(view)
            if total <= budget:
                break
            if keep_at_least > 1:
                logger.warning(
                    "Dropping below the %d most recent messages to fit the context budget",
                    keep_at_least,
                )

        remaining = budget - preamble_tokens
        if total > budget and view and remaining >= MIN_MESSAGE_TOKENS:
            view = [self._squeeze(view[-1], remaining)]
            total = preamble_tokens + estimate_messages(view)

        if total > budget:
            raise UnreducibleOverflowError(preamble_tokens, budget)

        if dropped:
            logger.info("Dropped %d oldest messages, now ~%d tokens", dropped, total)
        return GuardResult(view, True, total, dropped)

    def _repair_head(self, view: list[dict]) -> int:
        """Keep the view starting on a user turn with no dangling tool results.

        Returns the number of extra messages dropped.
        """
        extra = 0
        while len(view) > 1 and view[0].get("role") == "assistant":
            view.pop(0)
            extra += 1
        if view and isinstance(view[0].get("content"), list):
            view[0] = _detach_tool_results(view[0])
        return extra

    def _cap_blocks(self, message: dict, cap: int) -> dict:
        content = message.get("content", "")
        if isinstance(content, str):
            return {**message, "content": truncate_text(content, cap)}
        blocks = []
        for block in content:
            if block.get("type") == "text":
                block = {**block, "text": truncate_text(block.get("text", ""), cap)}
            elif block.get("type") == "tool_result" and isinstance(block.get("content"), str):
                block = {**block, "content": truncate_text(block["content"], cap)}
            blocks.append(block)
        return {**message, "content": blocks}

    def _squeeze(self, message: dict, allowed: int) -> dict:
        """Cut every text-bearing block of a lone message to share ``allowed``."""
        content = message.get("content", "")
        if isinstance(content, str):
            return {**message, "content": truncate_text(content, allowed)}
        fixed = sum(
            estimate_block(b) for b in content
            if not _is_text_bearing(b)
        )
        text_blocks = sum(1 for b in content if _is_text_bearing(b))
        if not text_blocks:
            return message
        share = max(0, (allowed - fixed) // text_blocks)
        return self._cap_blocks(message, share)


def _is_text_bearing(block: dict) -> bool:
    if block.get("type") == "text":
        return True
    return block.get("type") == "tool_result" and isinstance(block.get("content"), str)


def _detach_tool_results(message: dict) -> dict:
    """Turn tool_result blocks whose tool_use was dropped into plain text."""
    blocks = []
    for block in message["content"]:
        if block.get("type") == "tool_result":
            content = block.get("content", "")
            if isinstance(content, list):
                content = "\n".join(b.get("text", "") for b in content if b.get("type") == "text")
            block = {"type": "text", "text": ORPHAN_RESULT_PREFIX + str(content)}
        blocks.append(block)
    return {**message, "content": blocks}
