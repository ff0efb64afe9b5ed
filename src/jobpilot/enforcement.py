"""Enforcement: three strikes on workflow violations, then escalate.

A turn with violations earns a strike. Strikes one and two are answered
with a corrective guidance message fed back to the agent as the next user
turn. The third consecutive strike stops the job and hands it to a
higher-trust reviewer. A clean turn resets the count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from jobpilot.workflow import (
    VIOLATION_DIRECT_EDIT,
    VIOLATION_PHASE_SKIP,
    VIOLATION_TEST_SKIP,
    VIOLATION_TOOL_BLOCK,
    ViolationRecord,
)

logger = logging.getLogger(__name__)

ESCALATION_REASON = "escalated"

CORRECTIONS = {
    VIOLATION_TOOL_BLOCK: (
        "Only use a tool in a phase that allows it: file changes during ⚡ Executing, "
        "tests and verification during execute/test/verify, commits only after ✅ Complete."
    ),
    VIOLATION_DIRECT_EDIT: (
        "Do not write diffs or search/replace blocks in your reply. Announce ⚡ Executing "
        "and change files with write_file or edit_file."
    ),
    VIOLATION_PHASE_SKIP: (
        "Follow the phase order: 🔍 Assessing, 📋 Planning, ⚡ Executing, 🧪 Testing, "
        "✓ Verifying, ✅ Complete. Say why if you skip planning for a trivial single file fix."
    ),
    VIOLATION_TEST_SKIP: (
        "Run the tests (run_tests) and then verify (verify_changes) before committing."
    ),
}


class EnforcementAction(Enum):
    ALLOW = "allow"
    GUIDE = "guide"
    ESCALATE = "escalate"


@dataclass
class EnforcementVerdict:
    """Outcome of evaluating one assistant turn."""

    action: EnforcementAction
    strikes: int
    violations: list[ViolationRecord] = field(default_factory=list)
    guidance: str | None = None


def build_guidance(violations: list[ViolationRecord], strike: int, max_strikes: int) -> str:
    """Corrective message for the agent after a strike."""
    lines = [
        f"[Workflow Enforcement] Strike {strike}/{max_strikes}. "
        f"Your last turn broke the workflow rules:"
    ]
    for v in violations:
        lines.append(f"- ({v.type}, {v.phase} phase) {v.message}")
    seen = []
    for v in violations:
        fix = CORRECTIONS.get(v.type)
        if fix and fix not in seen:
            seen.append(fix)
    lines.extend(seen)
    remaining = max_strikes - strike
    lines.append(
        f"{remaining} more consecutive violation{'s' if remaining != 1 else ''} "
        "will stop this job and hand it to a reviewer."
    )
    return "\n".join(lines)


class EnforcementOrchestrator:
    """Strike counter and escalation policy for one job."""

    def __init__(self, max_strikes: int = 3):
        if max_strikes < 1:
            raise ValueError("max_strikes must be at least 1")
        self.max_strikes = max_strikes
        self.strikes = 0
        self.progress = 0
        self.escalated = False
        self.history: list[ViolationRecord] = []

    def evaluate(self, violations: list[ViolationRecord]) -> EnforcementVerdict:
        if self.escalated:
            return EnforcementVerdict(EnforcementAction.ESCALATE, self.strikes, list(violations))
        if not violations:
            self.strikes = 0
            self.progress += 1
            return EnforcementVerdict(EnforcementAction.ALLOW, 0)

        self.strikes += 1
        self.history.extend(violations)
        if self.strikes >= self.max_strikes:
            self.escalated = True
            logger.warning("Escalating after %d consecutive violations", self.strikes)
            return EnforcementVerdict(EnforcementAction.ESCALATE, self.strikes, list(violations))

        guidance = build_guidance(violations, self.strikes, self.max_strikes)
        return EnforcementVerdict(EnforcementAction.GUIDE, self.strikes, list(violations), guidance)

    def to_dict(self) -> dict:
        return {
            "strikes": self.strikes,
            "progress": self.progress,
            "escalated": self.escalated,
            "history": [v.to_dict() for v in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict, max_strikes: int = 3) -> EnforcementOrchestrator:
        orchestrator = cls(max_strikes=max_strikes)
        orchestrator.strikes = data.get("strikes", 0)
        orchestrator.progress = data.get("progress", 0)
        orchestrator.escalated = data.get("escalated", False)
        orchestrator.history = [ViolationRecord.from_dict(v) for v in data.get("history", [])]
        return orchestrator
