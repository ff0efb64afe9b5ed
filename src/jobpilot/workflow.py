"""Workflow phase validator: which tools are legal when.

Phases run assess -> plan -> execute -> test -> verify -> confirm -> commit.
The execute/test/verify stretch may loop, plan may be skipped with a
stated reason, and commit is terminal. The validator:

- moves between phases on announcements in assistant text and on check
  tools (running tests enters ``test``, verification enters ``verify``),
- blocks tools whose capability is not legal in the current phase,
- flags patch-like text written outside ``execute`` as a direct edit,
- refuses commits until tests and then verification have passed,
- decides whether a finished job may count as completed.

Every rejection appends exactly one ViolationRecord.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from jobpilot.tools import Capability, ToolKind

logger = logging.getLogger(__name__)


class Phase(Enum):
    ASSESS = "assess"
    PLAN = "plan"
    EXECUTE = "execute"
    TEST = "test"
    VERIFY = "verify"
    CONFIRM = "confirm"
    COMMIT = "commit"


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)

VALID_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.ASSESS: {Phase.PLAN, Phase.EXECUTE},
    Phase.PLAN: {Phase.EXECUTE, Phase.ASSESS},
    Phase.EXECUTE: {Phase.TEST, Phase.PLAN, Phase.ASSESS},
    Phase.TEST: {Phase.EXECUTE, Phase.VERIFY},
    Phase.VERIFY: {Phase.EXECUTE, Phase.TEST, Phase.CONFIRM},
    Phase.CONFIRM: {Phase.EXECUTE, Phase.COMMIT},
    Phase.COMMIT: set(),
}

LEGAL_PHASES: dict[Capability, set[Phase]] = {
    Capability.READ: set(Phase),
    Capability.TRACK: set(Phase),
    Capability.MUTATE: {Phase.EXECUTE},
    Capability.CHECK: {Phase.EXECUTE, Phase.TEST, Phase.VERIFY},
    Capability.DELEGATE: {Phase.ASSESS, Phase.PLAN, Phase.EXECUTE},
    Capability.COMMIT: {Phase.COMMIT},
}

VIOLATION_TOOL_BLOCK = "tool_block"
VIOLATION_DIRECT_EDIT = "direct_edit"
VIOLATION_PHASE_SKIP = "phase_skip"
VIOLATION_TEST_SKIP = "test_skip"

PLAN_SKIP_REASONS = (
    "single file",
    "single-file",
    "trivial",
    "read-only",
    "status check",
    "one-line",
    "one line",
)

ANNOUNCEMENTS: list[tuple[re.Pattern, Phase]] = [
    (re.compile(r"🔍\s*Assess", re.IGNORECASE), Phase.ASSESS),
    (re.compile(r"📋\s*Plan", re.IGNORECASE), Phase.PLAN),
    (re.compile(r"⚡\s*Execut", re.IGNORECASE), Phase.EXECUTE),
    (re.compile(r"🧪\s*Test", re.IGNORECASE), Phase.TEST),
    (re.compile(r"[✓✔]\s*Verif", re.IGNORECASE), Phase.VERIFY),
    (re.compile(r"✅\s*Complete", re.IGNORECASE), Phase.CONFIRM),
    (re.compile(r"📤\s*Commit", re.IGNORECASE), Phase.COMMIT),
]
PHASE_TAG = re.compile(r"\[phase:\s*(" + "|".join(p.value for p in Phase) + r")\s*\]", re.IGNORECASE)

PATCH_MARKERS: list[re.Pattern] = [
    re.compile(r"^--- a/", re.MULTILINE),
    re.compile(r"^\+\+\+ b/", re.MULTILINE),
    re.compile(r"<<<<<<< SEARCH"),
    re.compile(r">>>>>>> REPLACE"),
    re.compile(r"\bapply_patch\b"),
    re.compile(r"```[a-z]*\n[\w./-]+\.[A-Za-z0-9]+\n"),
]


@dataclass(frozen=True)
class ViolationRecord:
    """Immutable record of one rejected action."""

    type: str
    phase: str
    message: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "phase": self.phase,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ViolationRecord:
        return cls(data["type"], data["phase"], data["message"], data.get("timestamp", time.time()))


def announced_phases(text: str) -> list[Phase]:
    """Phases announced in ``text``, in order of appearance."""
    found: list[tuple[int, Phase]] = []
    for pattern, phase in ANNOUNCEMENTS:
        found.extend((m.start(), phase) for m in pattern.finditer(text))
    found.extend((m.start(), Phase(m.group(1).lower())) for m in PHASE_TAG.finditer(text))
    return [phase for _, phase in sorted(found, key=lambda item: item[0])]


def contains_patch(text: str) -> bool:
    return any(p.search(text) for p in PATCH_MARKERS)


def plan_skip_reason(text: str) -> str | None:
    lowered = text.lower()
    for reason in PLAN_SKIP_REASONS:
        if reason in lowered:
            return reason
    return None


class WorkflowValidator:
    """Per-job phase state machine with tool gating."""

    def __init__(self, on_transition: Callable[[Phase, Phase], None] | None = None):
        self.phase = Phase.ASSESS
        self.visited: list[Phase] = [Phase.ASSESS]
        self.history: list[dict] = []
        self.violations: list[ViolationRecord] = []
        self.plan_skip_justification: str | None = None
        self.tests_run = False
        self.tests_passed = False
        self.verification_run = False
        self.verification_passed = False
        self.mutations = 0
        self.committed = False
        self.on_transition = on_transition
        self._unseen = 0

    # --- Transitions ---

    def transition(self, target: Phase, reason: str = "") -> bool:
        """Move to ``target`` if legal; otherwise record a phase_skip."""
        if target == self.phase:
            return True
        allowed = VALID_TRANSITIONS[self.phase]
        if target not in allowed:
            self._violate(
                VIOLATION_PHASE_SKIP,
                f"Cannot move from {self.phase.value} to {target.value} "
                f"(allowed: {sorted(p.value for p in allowed) or 'none, commit is final'})",
            )
            return False
        if self.phase == Phase.ASSESS and target == Phase.EXECUTE:
            justification = plan_skip_reason(reason)
            if justification is None:
                self._violate(
                    VIOLATION_PHASE_SKIP,
                    "Skipping the plan phase needs a reason (e.g. a trivial single file fix)",
                )
                return False
            self.plan_skip_justification = justification

        prev = self.phase
        self.phase = target
        if target not in self.visited:
            self.visited.append(target)
        self.history.append({"from": prev.value, "to": target.value, "timestamp": time.time()})
        logger.info(f"Workflow: {prev.value} -> {target.value}")
        if self.on_transition is not None:
            self.on_transition(prev, target)
        return True

    def observe_text(self, text: str) -> list[Phase]:
        """Apply announcements in assistant text, then scan it for patches.

        Returns the phases actually entered.
        """
        entered = []
        for target in announced_phases(text):
            if target != self.phase and self.transition(target, reason=text):
                entered.append(target)
        if self.phase != Phase.EXECUTE and contains_patch(text):
            self._violate(
                VIOLATION_DIRECT_EDIT,
                "Patch-like content written outside the execute phase; "
                "change files with the file tools during execute instead",
            )
        return entered

    # --- Tool gating ---

    def authorize(self, kind: ToolKind) -> tuple[bool, str]:
        """Decide whether ``kind`` may run now.

        Check tools first move the job into the phase they signal when
        that move is legal.
        """
        capability = kind.capability
        if capability is Capability.CHECK and self.phase in LEGAL_PHASES[Capability.CHECK]:
            target = Phase(kind.signals)
            if target != self.phase and target in VALID_TRANSITIONS[self.phase]:
                self.transition(target, reason=f"{kind.value} invoked")

        if self.phase not in LEGAL_PHASES[capability]:
            legal = ", ".join(p.value for p in PHASE_ORDER if p in LEGAL_PHASES[capability])
            message = (
                f"Workflow violation: {kind.value} ({capability.value}) is not allowed "
                f"during the {self.phase.value} phase. Allowed in: {legal}."
            )
            self._violate(VIOLATION_TOOL_BLOCK, message)
            return False, message

        if capability is Capability.COMMIT and not self.can_commit:
            message = (
                "Workflow violation: commit requires passing tests followed by passing "
                "verification in this job"
            )
            self._violate(VIOLATION_TEST_SKIP, message)
            return False, message
        return True, ""

    def record_outcome(self, kind: ToolKind, ok: bool) -> None:
        if kind is ToolKind.RUN_TESTS:
            self.tests_run = True
            self.tests_passed = ok
            self.verification_passed = False
        elif kind is ToolKind.VERIFY_CHANGES:
            self.verification_run = True
            self.verification_passed = ok and self.phase == Phase.VERIFY and self.tests_passed
        elif kind.capability is Capability.MUTATE and ok:
            self.mutations += 1
            # Results from before this change no longer describe the code.
            self.tests_passed = False
            self.verification_passed = False
        elif kind.capability is Capability.COMMIT and ok:
            self.committed = True

    @property
    def can_commit(self) -> bool:
        return self.tests_passed and self.verification_passed

    # --- Completion ---

    def completion_gate(self, auto_commit: bool) -> tuple[bool, list[str]]:
        """(passes, missing requirements) for marking the job completed."""
        missing = []
        if Phase.EXECUTE not in self.visited:
            missing.append("execute phase never reached")
        if auto_commit:
            if not self.tests_passed:
                missing.append("tests did not pass" if self.tests_run else "tests never ran")
            if not self.verification_passed:
                missing.append(
                    "verification did not pass after tests"
                    if self.verification_run else "verification never ran"
                )
        return (not missing, missing)

    def prepare_commit(self) -> bool:
        """Walk verify -> confirm -> commit for the final batched commit."""
        for target in (Phase.CONFIRM, Phase.COMMIT):
            if self.phase == target:
                continue
            if target not in VALID_TRANSITIONS[self.phase]:
                return False
            self.transition(target, reason="auto-commit")
        return self.phase == Phase.COMMIT

    # --- Violations ---

    def _violate(self, vtype: str, message: str) -> ViolationRecord:
        record = ViolationRecord(vtype, self.phase.value, message)
        self.violations.append(record)
        logger.warning("Workflow violation (%s) in %s: %s", vtype, self.phase.value, message)
        return record

    def take_new_violations(self) -> list[ViolationRecord]:
        """Violations recorded since the previous call."""
        new = self.violations[self._unseen:]
        self._unseen = len(self.violations)
        return new

    @property
    def skipped_phases(self) -> list[str]:
        return [p.value for p in PHASE_ORDER if p not in self.visited]

    # --- Persistence ---

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "visited": [p.value for p in self.visited],
            "history": self.history,
            "violations": [v.to_dict() for v in self.violations],
            "plan_skip_justification": self.plan_skip_justification,
            "tests_run": self.tests_run,
            "tests_passed": self.tests_passed,
            "verification_run": self.verification_run,
            "verification_passed": self.verification_passed,
            "mutations": self.mutations,
            "committed": self.committed,
        }

    @classmethod
    def from_dict(
        cls, data: dict, on_transition: Callable[[Phase, Phase], None] | None = None
    ) -> WorkflowValidator:
        validator = cls(on_transition=on_transition)
        validator.phase = Phase(data.get("phase", "assess"))
        validator.visited = [Phase(p) for p in data.get("visited", ["assess"])]
        validator.history = data.get("history", [])
        validator.violations = [ViolationRecord.from_dict(v) for v in data.get("violations", [])]
        validator.plan_skip_justification = data.get("plan_skip_justification")
        validator.tests_run = data.get("tests_run", False)
        validator.tests_passed = data.get("tests_passed", False)
        validator.verification_run = data.get("verification_run", False)
        validator.verification_passed = data.get("verification_passed", False)
        validator.mutations = data.get("mutations", 0)
        validator.committed = data.get("committed", False)
        validator._unseen = len(validator.violations)
        return validator
