"""Job lifecycle manager: creation, the conversation loop, and the ending.

One worker (an asyncio task) per job, at most one active job per user.
Each iteration:

1. fit the conversation under the context budget
2. call the LM with the job's tool set
3. validate the tool calls it made
4. dispatch them through the workflow gate
5. append the assistant turn, then its tool results
6. let enforcement count strikes (guidance or escalation)
7. checkpoint, then decide whether to go on

When the loop ends the workspace is checked for unsafe changes (rolled
back if found), the completion gate is applied, and an auto-commit job
gets all of its changes committed in one batch. A build or fix job that
changed no files fails with an incident instead of completing.

Every checkpoint doubles as the worker's heartbeat. A running job that no
live worker owns and whose heartbeat has gone stale is moved to
interrupted, so a crashed process never holds a user's slot for good.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import re
import socket
import time
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum

from jobpilot.config import JobPilotConfig
from jobpilot.conversation import ConversationLog, ToolCall, ToolResult, check_pairing
from jobpilot.enforcement import ESCALATION_REASON, EnforcementAction, EnforcementOrchestrator
from jobpilot.errors import (
    InvalidJobStateError,
    JobPilotError,
    ProtocolError,
    SafetyViolationError,
    SimpleMessageError,
)
from jobpilot.events import (
    EVENT_JOB_CANCELLED,
    EVENT_JOB_COMPLETED,
    EVENT_JOB_CONTENT,
    EVENT_JOB_ESCALATED,
    EVENT_JOB_FAILED,
    EVENT_JOB_PROGRESS,
    EVENT_JOB_STARTED,
    EVENT_TASK_UPDATED,
    EventCollector,
)
from jobpilot.intent import Intent, classify, is_simple_message, iteration_budget
from jobpilot.metrics import WorkflowMetricsTracker
from jobpilot.provider import LMProvider, call_with_budget
from jobpilot.registry import CancellationToken, JobRegistry
from jobpilot.store import RESUMABLE, Job, JobStatus, JobStore
from jobpilot.token_guard import TokenBudgetGuard
from jobpilot.tools import AutonomyTier, Capability, ToolContext, ToolDispatcher, ToolKind
from jobpilot.workflow import Phase, WorkflowValidator
from jobpilot.workspace import FileChange, Workspace

logger = logging.getLogger(__name__)

AUTO_COMPLETE_NOTE = "Auto-completed (session ended)"

SYSTEM_PREAMBLE = """You are an autonomous software engineer working inside a project workspace.
All file paths are relative to the workspace root.

Work through these phases and announce each one on its own line when you enter it:
🔍 Assessing - read the code and understand the request
📋 Planning - create a task list with create_task_list
⚡ Executing - change files with write_file, edit_file, delete_file
🧪 Testing - run the tests with run_tests
✓ Verifying - check your changes with verify_changes
✅ Complete - summarize what changed

Rules:
- File changes are only allowed while executing. Never paste diffs or search/replace blocks.
- You may skip planning only for a trivial single file fix; say so when you do.
- Keep task statuses current with update_task.
- A self-contained sub-task can be handed to start_subagent, which reports back a summary.
- When everything is finished and no tasks are open, say that the task is complete."""

PROTOCOL_CORRECTION = (
    "[Protocol] Your last reply could not be processed: {error}. "
    "Use only the tools provided, with every required field, and try again."
)
CONTINUE_NOTE = (
    "Continue with the next step. If the work is finished and verified, say the task is complete."
)
EMPTY_REPLY = "(no reply)"
RESUME_NOTE = "[Resumed] The job was interrupted. Continue from where you left off."

SUBAGENT_PREAMBLE = """You are a sub-agent doing one focused task for a larger job.
All file paths are relative to the workspace root. The job's workflow rules still apply:
file changes are only allowed while the job is executing.
Use the tools to do the task, then reply with a short summary of what you found or
changed and stop calling tools."""
SUBAGENT_EXCLUDED = frozenset({ToolKind.START_SUBAGENT.value, ToolKind.COMMIT_CHANGES.value})

WORKER_LOST = "worker lost"
NO_CHANGES_REASON = "no files changed"
CHANGE_INTENTS = (Intent.BUILD, Intent.FIX)


class LoopExit(Enum):
    DONE = "done"
    STUCK = "stuck"
    BUDGET = "budget"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"
    READ_ONLY = "read_only"


@dataclass
class JobOutcome:
    """What a worker reports when it finishes."""

    job_id: str
    status: JobStatus
    reason: str = ""
    files_changed: list[str] = field(default_factory=list)
    commit_hash: str | None = None
    iterations: int = 0
    metrics: dict | None = None


class WorkflowGate:
    """Dispatcher gate: the validator decides, metrics listen."""

    def __init__(self, validator: WorkflowValidator, metrics: WorkflowMetricsTracker, ctx: ToolContext):
        self.validator = validator
        self.metrics = metrics
        self.ctx = ctx

    def authorize(self, kind: ToolKind) -> tuple[bool, str]:
        return self.validator.authorize(kind)

    def record_outcome(self, kind: ToolKind, ok: bool) -> None:
        self.validator.record_outcome(kind, ok)
        if kind is ToolKind.RUN_TESTS:
            self.metrics.record_tests(ok)
        elif kind is ToolKind.VERIFY_CHANGES:
            self.metrics.record_verification(self.validator.verification_passed)
        elif kind is ToolKind.COMMIT_CHANGES and ok:
            self.metrics.record_commit(self.ctx.commit_hash)


@dataclass
class JobRun:
    """Runtime state owned by one worker."""

    job: Job
    log: ConversationLog
    workspace: Workspace
    ctx: ToolContext
    dispatcher: ToolDispatcher
    validator: WorkflowValidator
    enforcement: EnforcementOrchestrator
    metrics: WorkflowMetricsTracker
    gate: WorkflowGate
    token: CancellationToken
    guard: TokenBudgetGuard
    intent: Intent
    budget: int
    auto_commit: bool
    iteration: int = 0
    idle_iterations: int = 0
    read_only_iterations: int = 0
    after_guidance: bool = False
    protocol_failures: int = 0


class JobManager:
    """Owns jobs from creation to their terminal status."""

    def __init__(
        self,
        store: JobStore,
        provider: LMProvider,
        config: JobPilotConfig | None = None,
        events: EventCollector | None = None,
        registry: JobRegistry | None = None,
    ):
        self.store = store
        self.provider = provider
        self.config = config or JobPilotConfig()
        self.events = events or EventCollector(store)
        self.registry = registry or JobRegistry(store)
        self._workers: dict[str, asyncio.Task] = {}
        # Jobs whose worker body is executing in this process.
        self._running: set[str] = set()
        self.worker_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"
        self._completion = re.compile(
            r"\b(" + "|".join(re.escape(k) for k in self.config.loop.completion_keywords) + r")\b",
            re.IGNORECASE,
        )

    # --- Creation / control ---

    async def create_job(
        self,
        user_id: str,
        request: str,
        *,
        workspace: str,
        autonomy: str | None = None,
        auto_commit: bool | None = None,
        force: bool = False,
    ) -> Job:
        """Create a pending job.

        Raises SimpleMessageError for chit-chat (unless ``force``) and
        JobConflictError when the user already has an active job.
        """
        if not request.strip():
            raise SimpleMessageError("Empty request")
        if self.config.loop.reject_simple_messages and not force and is_simple_message(request):
            raise SimpleMessageError(f"Conversational message, answer directly: {request!r}")
        Workspace(workspace)
        tier = AutonomyTier.parse(autonomy or self.config.autonomy.default_tier)
        intent = classify(request)
        metadata = {
            "request": request,
            "workspace": str(workspace),
            "autonomy": tier.name.lower(),
            "auto_commit": self.config.auto_commit if auto_commit is None else auto_commit,
            "intent": intent.value,
            "iteration_budget": iteration_budget(intent, self.config.iterations),
            "model": self.config.provider.model,
        }
        log = ConversationLog()
        log.append_request(request)
        await self.recover_stale_jobs(user_id)
        return await self.registry.create_if_absent(user_id, metadata, log.to_list())

    def start(self, job_id: str) -> asyncio.Task:
        """Spawn the worker for a job."""
        existing = self._workers.get(job_id)
        if existing is not None and not existing.done():
            raise InvalidJobStateError(f"Job {job_id} already has a worker")
        task = asyncio.create_task(self.run_job(job_id), name=f"jobpilot-{job_id}")
        self._workers[job_id] = task
        task.add_done_callback(lambda _t: self._workers.pop(job_id, None))
        return task

    async def wait(self, job_id: str) -> JobOutcome | None:
        task = self._workers.get(job_id)
        if task is None:
            return None
        return await task

    async def cancel(self, job_id: str, reason: str = "cancelled by user") -> bool:
        """Request cooperative cancellation. Pending jobs end immediately."""
        job = self.store.get_job(job_id)
        if job is None or job.status.is_terminal:
            return False
        if job.status == JobStatus.RUNNING and await self._recover_if_orphaned(job):
            return True
        signalled = self.registry.cancel(job_id, reason)
        if job.status == JobStatus.PENDING and job_id not in self._workers:
            self.store.set_status(job_id, JobStatus.INTERRUPTED, failure_reason=reason)
            await self.registry.release(job.user_id, job_id)
            self.events.emit(
                EVENT_JOB_CANCELLED, reason, job_id=job_id, user_id=job.user_id,
                metadata={"reason": reason},
            )
            return True
        if not signalled:
            # The worker lives in another process; it polls the store.
            self.store.request_cancel(job_id, reason)
        return True

    async def resume(self, job_id: str, user_id: str, start: bool = True) -> Job:
        """Resume an interrupted or failed job from its last checkpoint."""
        job = self.store.require_job(job_id)
        if job.user_id != user_id:
            raise InvalidJobStateError(f"Job {job_id} does not belong to {user_id}")
        if await self.recover_stale_jobs(user_id):
            job = self.store.require_job(job_id)
        if job.status not in RESUMABLE:
            raise InvalidJobStateError(
                f"Only interrupted or failed jobs can be resumed (job is {job.status.value})"
            )
        await self.registry.reacquire(user_id, job_id)
        self.store.clear_cancel_request(job_id)
        job = self.store.set_status(
            job_id, JobStatus.RUNNING,
            resumed=True, failure_reason=None, escalated=False, worker=self.worker_id,
        )
        logger.info("Resuming job %s from iteration %d", job_id, job.last_iteration)
        if start:
            self.start(job_id)
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self.store.get_job(job_id)

    def list_jobs(self, user_id: str | None = None) -> list[Job]:
        return self.store.list_jobs(user_id=user_id)

    async def recover_stale_jobs(self, user_id: str | None = None) -> list[str]:
        """Interrupt running jobs whose worker is gone; return their ids.

        A running job is orphaned when no worker in this process owns it
        and its heartbeat (the time of its last checkpoint) is older than
        ``loop.stale_worker_seconds``. Orphans become interrupted, keep
        their checkpoint, and give up the user's active slot, so they can
        be resumed.
        """
        recovered = []
        for job in self.store.list_jobs(user_id=user_id, status=JobStatus.RUNNING, limit=1000):
            if await self._recover_if_orphaned(job):
                recovered.append(job.id)
        return recovered

    async def _recover_if_orphaned(self, job: Job) -> bool:
        if job.id in self._running or job.id in self._workers:
            return False
        age = time.time() - job.updated_at
        if age < self.config.loop.stale_worker_seconds:
            return False
        owner = job.metadata.get("worker", "unknown")
        logger.warning(
            "Job %s: worker %s has not checkpointed for %.0fs, marking interrupted",
            job.id, owner, age,
        )
        self.store.set_status(job.id, JobStatus.INTERRUPTED, failure_reason=WORKER_LOST)
        await self.registry.release(job.user_id, job.id)
        self.events.emit(
            EVENT_JOB_CANCELLED, WORKER_LOST, job_id=job.id, user_id=job.user_id,
            metadata={"reason": WORKER_LOST, "worker": owner, "last_iteration": job.last_iteration},
        )
        return True

    # --- Worker ---

    async def run_job(self, job_id: str) -> JobOutcome:
        """Worker body: run the loop and settle the job's terminal status."""
        job = self.store.require_job(job_id)
        resumed = job.status == JobStatus.RUNNING and job.metadata.get("resumed")
        if job.status != JobStatus.PENDING and not resumed:
            raise InvalidJobStateError(f"Job {job_id} cannot run from {job.status.value}")
        if job_id in self._running:
            raise InvalidJobStateError(f"Job {job_id} already has a worker")
        job = self.store.set_status(job_id, JobStatus.RUNNING, worker=self.worker_id)
        self._running.add(job_id)

        run: JobRun | None = None
        try:
            run = self._prepare(job, resumed=bool(resumed))
            self._emit(run, EVENT_JOB_STARTED, job.request[:200], {
                "intent": run.intent.value,
                "budget": run.budget,
                "resumed": bool(resumed),
            })
            exit_reason = await self._loop(run)
            return await self._finish(run, exit_reason)
        except Exception as e:
            tb = traceback.format_exc()
            logger.error("Job %s failed: %s\n%s", job_id, e, tb)
            if run is None:
                self.store.set_status(job_id, JobStatus.FAILED, failure_reason=str(e))
                self.events.emit(
                    EVENT_JOB_FAILED, str(e), job_id=job_id, user_id=job.user_id,
                    metadata={"error": str(e)},
                )
                return JobOutcome(job_id, JobStatus.FAILED, str(e))
            reason = str(e) if isinstance(e, JobPilotError) else f"{type(e).__name__}: {e}"
            return await self._fail(run, reason)
        except asyncio.CancelledError:
            logger.warning("Worker for job %s cancelled", job_id)
            current = self.store.get_job(job_id)
            if current is not None and current.status == JobStatus.RUNNING:
                self.store.set_status(job_id, JobStatus.INTERRUPTED, failure_reason="worker cancelled")
            raise
        finally:
            self._running.discard(job_id)
            await self.registry.release(job.user_id, job_id)

    def _prepare(self, job: Job, resumed: bool) -> JobRun:
        cfg = self.config
        meta = job.metadata
        journal = [FileChange.from_dict(c) for c in meta.get("journal", [])]
        workspace = Workspace(
            meta["workspace"],
            protected_paths=cfg.workspace.protected_paths,
            max_read_bytes=cfg.workspace.max_read_bytes,
            journal=journal,
        )
        token = self.registry.token(job.id)
        ctx = ToolContext(
            job_id=job.id,
            user_id=job.user_id,
            workspace=workspace,
            store=self.store,
            events=self.events,
            cancel=token,
            test_command=cfg.workspace.test_command,
            verify_command=cfg.workspace.verify_command,
            command_timeout=cfg.workspace.command_timeout,
            commit_author=cfg.workspace.commit_author,
            commit_hash=meta.get("commit_hash"),
        )
        tier = AutonomyTier.parse(meta.get("autonomy", cfg.autonomy.default_tier))
        dispatcher = ToolDispatcher(ctx, tier, cfg.autonomy.permissions)

        if "metrics" in meta:
            metrics = WorkflowMetricsTracker.from_dict(job.id, meta["metrics"])
        else:
            metrics = WorkflowMetricsTracker(job.id)

        def on_transition(prev: Phase, target: Phase) -> None:
            metrics.on_transition(prev, target)
            self._emit_progress(job, f"Phase: {prev.value} -> {target.value}")

        if "workflow" in meta:
            validator = WorkflowValidator.from_dict(meta["workflow"], on_transition=on_transition)
        else:
            validator = WorkflowValidator(on_transition=on_transition)

        enforcement = EnforcementOrchestrator(max_strikes=cfg.loop.max_strikes)
        if "enforcement" in meta and not resumed:
            enforcement = EnforcementOrchestrator.from_dict(
                meta["enforcement"], max_strikes=cfg.loop.max_strikes
            )

        log = ConversationLog.from_list(job.conversation)
        intent = Intent(meta.get("intent", classify(job.request).value))
        budget = meta.get("iteration_budget") or iteration_budget(intent, cfg.iterations)
        if resumed:
            budget = job.last_iteration + iteration_budget(intent, cfg.iterations)
            log.append_note(RESUME_NOTE)

        run = JobRun(
            job=job,
            log=log,
            workspace=workspace,
            ctx=ctx,
            dispatcher=dispatcher,
            validator=validator,
            enforcement=enforcement,
            metrics=metrics,
            gate=WorkflowGate(validator, metrics, ctx),
            token=token,
            guard=TokenBudgetGuard.from_config(cfg),
            intent=intent,
            budget=budget,
            auto_commit=bool(meta.get("auto_commit", cfg.auto_commit)),
            iteration=job.last_iteration,
            idle_iterations=meta.get("idle_iterations", 0),
            read_only_iterations=meta.get("read_only_iterations", 0),
        )
        ctx.delegate = functools.partial(self._run_subagent, run)
        return run

    async def _loop(self, run: JobRun) -> LoopExit:
        cfg = self.config
        tools = run.dispatcher.schemas()
        while run.iteration < run.budget:
            if self._cancelled(run):
                return LoopExit.CANCELLED
            iteration = run.iteration + 1
            self._emit_progress(run.job, f"Iteration {iteration}/{run.budget}")

            response, bounded = await call_with_budget(
                self.provider,
                run.guard,
                system=SYSTEM_PREAMBLE,
                messages=run.log.messages(),
                tools=tools,
                max_tokens=cfg.provider.default_max_tokens,
                max_attempts=cfg.provider.overflow_max_attempts,
                backoff_seconds=cfg.provider.backoff_seconds,
            )
            if bounded.truncated:
                logger.info(
                    "Job %s: context reduced to ~%d tokens (%d messages dropped)",
                    run.job.id, bounded.estimated_tokens, bounded.dropped,
                )
            run.metrics.record_tokens(response.input_tokens, response.output_tokens)

            calls = response.tool_calls
            try:
                for call in calls:
                    run.dispatcher.validate_call(call)
                if len({c.id for c in calls}) != len(calls):
                    raise ProtocolError("Duplicate tool_use ids in one turn")
            except ProtocolError as e:
                run.protocol_failures += 1
                if run.protocol_failures > 1:
                    raise
                logger.warning("Job %s: protocol error, retrying iteration: %s", run.job.id, e)
                run.log.append_note(PROTOCOL_CORRECTION.format(error=e))
                await self._checkpoint(run)
                continue
            run.protocol_failures = 0

            text = response.text
            if text.strip():
                self._emit(run, EVENT_JOB_CONTENT, text[:200], {"text": text})
            run.validator.observe_text(text)

            results = []
            for call in calls:
                results.append(await run.dispatcher.dispatch(call, gate=run.gate))
            check_pairing(calls, results)

            run.log.append_assistant(response.content or [{"type": "text", "text": EMPTY_REPLY}])
            if results:
                run.log.append_tool_results(results)

            violations = run.validator.take_new_violations()
            for v in violations:
                run.metrics.record_violation(v)
            verdict = run.enforcement.evaluate(violations)
            run.iteration = iteration
            run.metrics.record_iteration()

            guided_last_turn = run.after_guidance
            run.after_guidance = False
            if verdict.action is EnforcementAction.GUIDE:
                run.log.append_guidance(verdict.guidance)
                run.after_guidance = True
                self._emit_progress(run.job, f"Workflow guidance issued (strike {verdict.strikes})")

            if calls:
                run.idle_iterations = 0
                if all(ToolKind(c.name).capability is Capability.READ for c in calls):
                    run.read_only_iterations += 1
                else:
                    run.read_only_iterations = 0
            else:
                run.idle_iterations += 1
            finished = (
                not calls
                and verdict.action is EnforcementAction.ALLOW
                and not guided_last_turn
                and self._looks_done(text)
                and not self.store.incomplete_tasks(run.job.id)
            )
            if not calls and not finished and verdict.action is EnforcementAction.ALLOW:
                run.log.append_note(CONTINUE_NOTE)

            await self._checkpoint(run)

            if verdict.action is EnforcementAction.ESCALATE:
                return LoopExit.ESCALATED
            if self._cancelled(run):
                return LoopExit.CANCELLED
            if finished:
                return LoopExit.DONE
            if not calls and run.idle_iterations >= cfg.loop.stuck_threshold:
                return LoopExit.STUCK
            if (
                run.intent in CHANGE_INTENTS
                and cfg.loop.max_read_only_iterations > 0
                and run.read_only_iterations >= cfg.loop.max_read_only_iterations
            ):
                return LoopExit.READ_ONLY
        return LoopExit.BUDGET

    def _cancelled(self, run: JobRun) -> bool:
        if not run.token.cancelled:
            reason = self.store.cancel_requested(run.job.id)
            if reason is not None:
                run.token.cancel(reason)
        if not run.token.cancelled:
            # Another process may have recovered the job from under us.
            current = self.store.get_job(run.job.id)
            if current is not None and current.status != JobStatus.RUNNING:
                run.token.cancel(current.metadata.get("failure_reason") or f"job is {current.status.value}")
        return run.token.cancelled

    def _looks_done(self, text: str) -> bool:
        return bool(text) and bool(self._completion.search(text))

    # --- Sub-agents ---

    async def _run_subagent(self, run: JobRun, task: str, max_iterations: int | None = None) -> str:
        """Work ``task`` in a child conversation and return its summary.

        The child shares the parent's dispatcher, budget guard and workflow
        gate: its tool calls obey the phase the parent is in, its file
        changes land in the parent's journal, and its tokens count toward
        the parent's metrics. It cannot delegate again or commit. It has
        its own iteration cap (``loop.subagent_max_iterations``, lowered
        by ``max_iterations``) and ends on the first turn without tool calls.
        """
        cfg = self.config
        limit = cfg.loop.subagent_max_iterations
        if max_iterations and max_iterations > 0:
            limit = min(limit, max_iterations)
        tools = [s for s in run.dispatcher.schemas() if s["name"] not in SUBAGENT_EXCLUDED]
        log = ConversationLog()
        log.append_request(task)
        self._emit_progress(run.job, f"Sub-agent started: {task[:80]}")
        logger.info("Job %s: sub-agent started (cap %d): %s", run.job.id, limit, task[:200])

        summary = ""
        for step in range(1, limit + 1):
            if self._cancelled(run):
                return f"Sub-agent cancelled after {step - 1} iterations. {summary}".strip()
            response, _ = await call_with_budget(
                self.provider,
                run.guard,
                system=SUBAGENT_PREAMBLE,
                messages=log.messages(),
                tools=tools,
                max_tokens=cfg.provider.default_max_tokens,
                max_attempts=cfg.provider.overflow_max_attempts,
                backoff_seconds=cfg.provider.backoff_seconds,
            )
            run.metrics.record_tokens(response.input_tokens, response.output_tokens)
            summary = response.text.strip() or summary
            calls = response.tool_calls
            log.append_assistant(response.content or [{"type": "text", "text": EMPTY_REPLY}])
            if not calls:
                self._emit_progress(run.job, f"Sub-agent finished after {step} iterations")
                return summary or "Sub-agent finished without a summary"
            if len({c.id for c in calls}) != len(calls):
                return f"Sub-agent stopped: duplicate tool_use ids. {summary}".strip()

            results = []
            for call in calls:
                if call.name in SUBAGENT_EXCLUDED:
                    results.append(
                        ToolResult(call.id, f"{call.name} is not available to a sub-agent", is_error=True)
                    )
                    continue
                try:
                    results.append(await run.dispatcher.dispatch(call, gate=run.gate))
                except ProtocolError as e:
                    results.append(ToolResult(call.id, f"Error: {e}", is_error=True))
            log.append_tool_results(results)

        self._emit_progress(run.job, f"Sub-agent stopped at its {limit} iteration cap")
        return f"Sub-agent stopped after {limit} iterations. Last report: {summary or '(none)'}"

    # --- Ending ---

    async def _finish(self, run: JobRun, exit_reason: LoopExit) -> JobOutcome:
        job_id = run.job.id
        logger.info("Job %s loop ended: %s after %d iterations", job_id, exit_reason.value, run.iteration)

        if exit_reason is LoopExit.CANCELLED:
            reason = run.token.reason or "cancelled"
            self.store.clear_cancel_request(run.job.id)
            run.job = self.store.set_status(job_id, JobStatus.INTERRUPTED, failure_reason=reason)
            await self._checkpoint(run)
            self._emit(run, EVENT_JOB_CANCELLED, reason, {"reason": reason})
            return JobOutcome(job_id, JobStatus.INTERRUPTED, reason, iterations=run.iteration)

        safe, issues = run.workspace.validate_safety()
        if not safe:
            undone = run.workspace.rollback()
            self._emit_progress(run.job, f"Rolled back {undone} changes: unsafe")
            return await self._fail(run, str(SafetyViolationError(issues)))

        if exit_reason is LoopExit.ESCALATED:
            return await self._escalate(run)
        if exit_reason is LoopExit.STUCK:
            logger.warning(
                "Job %s: no tool calls for %d consecutive iterations", job_id, run.idle_iterations
            )
            return await self._fail(run, "stuck")
        if exit_reason is LoopExit.READ_ONLY:
            return await self._fail(
                run, f"investigation only: {run.read_only_iterations} consecutive read-only iterations"
            )

        if run.intent in CHANGE_INTENTS and not run.workspace.net_changes():
            return await self._no_changes(run)

        passed, missing = run.validator.completion_gate(run.auto_commit)
        if not passed:
            prefix = "iteration budget exhausted; " if exit_reason is LoopExit.BUDGET else ""
            return await self._fail(run, prefix + "workflow incomplete: " + "; ".join(missing))

        if run.auto_commit and ToolKind.COMMIT_CHANGES not in run.dispatcher.visible:
            logger.info("Job %s: autonomy tier cannot commit, leaving changes uncommitted", job_id)
        elif run.auto_commit and run.workspace.net_changes() and not run.validator.committed:
            error = await self._auto_commit(run)
            if error:
                return await self._fail(run, error)

        return await self._complete(run)

    async def _auto_commit(self, run: JobRun) -> str | None:
        """Commit everything through the gate. Returns an error or None."""
        if not run.validator.prepare_commit():
            return f"cannot reach commit phase from {run.validator.phase.value}"
        files = sorted(run.workspace.net_changes())
        message = f"{run.job.request.strip().splitlines()[0][:72]}\n\nJob {run.job.id}: {len(files)} files"
        call = ToolCall(id=f"auto-commit-{run.job.id}", name=ToolKind.COMMIT_CHANGES.value, input={"message": message})
        result = await run.dispatcher.dispatch(call, gate=run.gate)
        for v in run.validator.take_new_violations():
            run.metrics.record_violation(v)
        if result.is_error:
            return f"commit failed: {result.content}"
        return None

    async def _complete(self, run: JobRun) -> JobOutcome:
        files = sorted(run.workspace.net_changes())
        metrics = self._settle(run)
        run.job = self.store.set_status(
            run.job.id, JobStatus.COMPLETED,
            commit_hash=run.ctx.commit_hash, files_changed=files,
        )
        await self._checkpoint(run)
        self._emit(run, EVENT_JOB_COMPLETED, f"Completed: {len(files)} files changed", {
            "filesChanged": files,
            "commitHash": run.ctx.commit_hash,
        })
        return JobOutcome(
            run.job.id, JobStatus.COMPLETED, "", files, run.ctx.commit_hash, run.iteration, metrics
        )

    async def _escalate(self, run: JobRun) -> JobOutcome:
        violations = [v.to_dict() for v in run.enforcement.history]
        incident = self.store.create_incident(
            run.job.id, run.job.user_id, ESCALATION_REASON, run.validator.phase.value, violations
        )
        self._emit(run, EVENT_JOB_ESCALATED, f"Escalated after {run.enforcement.strikes} strikes", {
            "violations": violations,
            "incident_id": incident.id,
        })
        return await self._fail(run, ESCALATION_REASON, escalated=True, incident_id=incident.id)

    async def _no_changes(self, run: JobRun) -> JobOutcome:
        """A build or fix job that changed nothing fails with an incident."""
        logger.warning("Job %s (%s) ended without changing any files", run.job.id, run.intent.value)
        incident = self.store.create_incident(
            run.job.id, run.job.user_id, NO_CHANGES_REASON, run.validator.phase.value,
            [v.to_dict() for v in run.enforcement.history],
        )
        return await self._fail(run, NO_CHANGES_REASON, incident_id=incident.id)

    async def _fail(self, run: JobRun, reason: str, **extra) -> JobOutcome:
        metrics = self._settle(run)
        files = sorted(run.workspace.net_changes())
        run.job = self.store.set_status(
            run.job.id, JobStatus.FAILED, failure_reason=reason, files_changed=files, **extra
        )
        await self._checkpoint(run)
        self._emit(run, EVENT_JOB_FAILED, reason, {"error": reason, **extra})
        return JobOutcome(run.job.id, JobStatus.FAILED, reason, files, None, run.iteration, metrics)

    def _settle(self, run: JobRun) -> dict | None:
        """Force-complete orphaned tasks and finalize metrics."""
        for task in self.store.complete_orphaned_tasks(run.job.id, AUTO_COMPLETE_NOTE):
            self._emit(run, EVENT_TASK_UPDATED, f"{task.title}: completed", {
                "task_id": task.id, "status": task.status, "result": task.result,
            })
        if run.metrics.finalized:
            return None
        final = run.metrics.finalize().to_dict()
        self.store.save_metrics(run.job.id, final)
        return final

    # --- Helpers ---

    async def _checkpoint(self, run: JobRun) -> None:
        meta = dict(run.job.metadata)
        meta.update({
            "workflow": run.validator.to_dict(),
            "enforcement": run.enforcement.to_dict(),
            "metrics": run.metrics.to_dict(),
            "journal": [c.to_dict() for c in run.workspace.journal],
            "idle_iterations": run.idle_iterations,
            "read_only_iterations": run.read_only_iterations,
            "commit_hash": run.ctx.commit_hash,
        })
        run.job.metadata = meta
        await asyncio.to_thread(
            self.store.save_checkpoint, run.job.id, run.log.to_list(), run.iteration, meta
        )

    def _emit(self, run: JobRun, event_type: str, summary: str, metadata: dict) -> None:
        self.events.emit(
            event_type, summary, job_id=run.job.id, user_id=run.job.user_id, metadata=metadata
        )

    def _emit_progress(self, job: Job, message: str) -> None:
        self.events.emit(
            EVENT_JOB_PROGRESS, message, job_id=job.id, user_id=job.user_id,
            metadata={"message": message},
        )
