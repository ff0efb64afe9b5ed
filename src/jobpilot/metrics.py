"""Workflow metrics: phase timings, violations, tokens, quality scores.

The tracker only accumulates while the job runs. ``finalize()`` computes
the scores once and freezes the tracker:

- phase compliance: share of the seven phases visited
- test coverage: 100 when tests passed and verification completed,
  50 when tests ran without that, 0 otherwise
- token efficiency: 100 at or below 500 tokens per iteration, one point
  lost per 10 tokens above that, never below 0
- overall: 0.4 compliance + 0.4 coverage + 0.2 efficiency
"""

from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass
from typing import Callable

from jobpilot.workflow import PHASE_ORDER, Phase, ViolationRecord

TOTAL_PHASES = len(PHASE_ORDER)
TOKEN_BASELINE = 500
COMPLIANCE_WEIGHT = 0.4
COVERAGE_WEIGHT = 0.4
EFFICIENCY_WEIGHT = 0.2


def _round(value: float) -> int:
    """Round half up."""
    return int(math.floor(value + 0.5))


def phase_compliance_score(visited: int) -> int:
    return _round(visited / TOTAL_PHASES * 100)


def coverage_score(tests_run: bool, tests_passed: bool, verification_complete: bool) -> int:
    if tests_run and tests_passed and verification_complete:
        return 100
    if tests_run:
        return 50
    return 0


def token_efficiency_score(avg_tokens_per_iteration: float) -> int:
    score = _round(100 - (avg_tokens_per_iteration - TOKEN_BASELINE) / 10)
    return max(0, min(100, score))


def overall_quality_score(compliance: int, coverage: int, efficiency: int) -> int:
    return _round(
        compliance * COMPLIANCE_WEIGHT + coverage * COVERAGE_WEIGHT + efficiency * EFFICIENCY_WEIGHT
    )


@dataclass
class WorkflowMetrics:
    """Final, write-once metrics for one job."""

    job_id: str
    phases_visited: list[str]
    skipped_phases: list[str]
    phase_timestamps: dict[str, float]
    phase_durations: dict[str, float]
    violation_count: int
    violations: list[dict]
    input_tokens: int
    output_tokens: int
    iteration_count: int
    avg_tokens_per_iteration: float
    tests_run: bool
    tests_passed: bool
    verification_complete: bool
    committed: bool
    commit_hash: str | None
    total_duration_s: float
    phase_compliance_score: int
    test_coverage_score: int
    token_efficiency_score: int
    overall_quality_score: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict:
        data = asdict(self)
        data["total_tokens"] = self.total_tokens
        return data


class WorkflowMetricsTracker:
    """Append-only metrics accumulator for one job."""

    def __init__(self, job_id: str, clock: Callable[[], float] = time.time):
        self.job_id = job_id
        self._clock = clock
        self.start_time = clock()
        self.current_phase = Phase.ASSESS.value
        self.phase_entered_at = self.start_time
        self.phase_timestamps: dict[str, float] = {Phase.ASSESS.value: self.start_time}
        self.phase_durations: dict[str, float] = {}
        self.violations: list[ViolationRecord] = []
        self.input_tokens = 0
        self.output_tokens = 0
        self.iteration_count = 0
        self.tests_run = False
        self.tests_passed = False
        self.verification_complete = False
        self.committed = False
        self.commit_hash: str | None = None
        self._final: WorkflowMetrics | None = None

    @property
    def finalized(self) -> bool:
        return self._final is not None

    def _check_open(self) -> None:
        if self._final is not None:
            raise RuntimeError(f"Metrics for job {self.job_id} are already finalized")

    def _close_phase(self, now: float) -> None:
        elapsed = max(0.0, now - self.phase_entered_at)
        self.phase_durations[self.current_phase] = (
            self.phase_durations.get(self.current_phase, 0.0) + elapsed
        )

    def on_transition(self, prev: Phase, target: Phase) -> None:
        """Validator hook: close the old phase, open the new one."""
        self._check_open()
        now = self._clock()
        self._close_phase(now)
        self.current_phase = target.value
        self.phase_entered_at = now
        self.phase_timestamps.setdefault(target.value, now)

    def record_violation(self, record: ViolationRecord) -> None:
        self._check_open()
        self.violations.append(record)

    def record_tokens(self, input_tokens: int, output_tokens: int) -> None:
        self._check_open()
        self.input_tokens += max(0, input_tokens)
        self.output_tokens += max(0, output_tokens)

    def record_iteration(self) -> None:
        self._check_open()
        self.iteration_count += 1

    def record_tests(self, passed: bool) -> None:
        self._check_open()
        self.tests_run = True
        self.tests_passed = passed
        self.verification_complete = False

    def record_verification(self, passed: bool) -> None:
        self._check_open()
        self.verification_complete = passed and self.tests_passed

    def record_commit(self, commit_hash: str | None) -> None:
        self._check_open()
        self.committed = True
        self.commit_hash = commit_hash

    def finalize(self) -> WorkflowMetrics:
        """Compute scores and freeze. A second call raises RuntimeError."""
        self._check_open()
        now = self._clock()
        self._close_phase(now)
        visited = [p.value for p in PHASE_ORDER if p.value in self.phase_timestamps]
        total = self.input_tokens + self.output_tokens
        avg = total / self.iteration_count if self.iteration_count else 0.0

        compliance = phase_compliance_score(len(visited))
        coverage = coverage_score(self.tests_run, self.tests_passed, self.verification_complete)
        efficiency = token_efficiency_score(avg)

        self._final = WorkflowMetrics(
            job_id=self.job_id,
            phases_visited=visited,
            skipped_phases=[p.value for p in PHASE_ORDER if p.value not in self.phase_timestamps],
            phase_timestamps=dict(self.phase_timestamps),
            phase_durations={k: round(v, 3) for k, v in self.phase_durations.items()},
            violation_count=len(self.violations),
            violations=[v.to_dict() for v in self.violations],
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            iteration_count=self.iteration_count,
            avg_tokens_per_iteration=round(avg, 2),
            tests_run=self.tests_run,
            tests_passed=self.tests_passed,
            verification_complete=self.verification_complete,
            committed=self.committed,
            commit_hash=self.commit_hash,
            total_duration_s=round(now - self.start_time, 3),
            phase_compliance_score=compliance,
            test_coverage_score=coverage,
            token_efficiency_score=efficiency,
            overall_quality_score=overall_quality_score(compliance, coverage, efficiency),
        )
        return self._final

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time,
            "current_phase": self.current_phase,
            "phase_entered_at": self.phase_entered_at,
            "phase_timestamps": self.phase_timestamps,
            "phase_durations": self.phase_durations,
            "violations": [v.to_dict() for v in self.violations],
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "iteration_count": self.iteration_count,
            "tests_run": self.tests_run,
            "tests_passed": self.tests_passed,
            "verification_complete": self.verification_complete,
            "committed": self.committed,
            "commit_hash": self.commit_hash,
        }

    @classmethod
    def from_dict(
        cls, job_id: str, data: dict, clock: Callable[[], float] = time.time
    ) -> WorkflowMetricsTracker:
        tracker = cls(job_id, clock=clock)
        tracker.start_time = data.get("start_time", tracker.start_time)
        tracker.current_phase = data.get("current_phase", tracker.current_phase)
        tracker.phase_entered_at = clock()
        tracker.phase_timestamps = dict(data.get("phase_timestamps", tracker.phase_timestamps))
        tracker.phase_durations = dict(data.get("phase_durations", {}))
        tracker.violations = [ViolationRecord.from_dict(v) for v in data.get("violations", [])]
        tracker.input_tokens = data.get("input_tokens", 0)
        tracker.output_tokens = data.get("output_tokens", 0)
        tracker.iteration_count = data.get("iteration_count", 0)
        tracker.tests_run = data.get("tests_run", False)
        tracker.tests_passed = data.get("tests_passed", False)
        tracker.verification_complete = data.get("verification_complete", False)
        tracker.committed = data.get("committed", False)
        tracker.commit_hash = data.get("commit_hash")
        return tracker
