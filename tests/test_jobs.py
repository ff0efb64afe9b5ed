"""End-to-end tests for jobpilot.jobs: the job loop against a scripted LM."""

import sqlite3
import subprocess
import time

import pytest

from conftest import requires_git, text, use
from jobpilot.errors import InvalidJobStateError, JobConflictError, SimpleMessageError
from jobpilot.jobs import (
    AUTO_COMPLETE_NOTE,
    EMPTY_REPLY,
    NO_CHANGES_REASON,
    RESUME_NOTE,
    SUBAGENT_PREAMBLE,
    WORKER_LOST,
    JobManager,
)
from jobpilot.store import JobStatus

REQUEST = "Add a greeting module to the app"
GREET = "def greet(name):\n    return f'hello {name}'\n"


@pytest.fixture
def manager(store, provider, config, events):
    return JobManager(store, provider, config=config, events=events)


async def _create(manager, project, user="alice", request=REQUEST, **kwargs):
    return await manager.create_job(user, request, workspace=str(project), **kwargs)


def _plan_and_write():
    return [
        [text("📋 Planning the change."), use("list_files", pattern="**/*.py")],
        [text("⚡ Executing."), use("write_file", path="src/greet.py", content=GREET)],
    ]


def _full_workflow(final="✅ Complete. The task is done."):
    return [
        [text("🔍 Assessing the request."), use("read_file", path="src/app.py")],
        *_plan_and_write(),
        [text("🧪 Testing."), use("run_tests")],
        [text("✓ Verifying."), use("verify_changes")],
        [text(final)],
    ]


def _tool_results(conversation):
    return [b for t in conversation if t["kind"] == "tool_results" for b in t["content"]]


def _orphan(store, job, iteration=3, age=3600):
    """Leave ``job`` the way a killed worker does: running, checkpointed, then silent."""
    store.set_status(job.id, JobStatus.RUNNING, worker="crashed-host:4242:abcdef")
    store.save_checkpoint(job.id, job.conversation, iteration, store.get_job(job.id).metadata)
    conn = sqlite3.connect(store.db_path)
    conn.execute("UPDATE jobs SET updated_at = ? WHERE id = ?", (time.time() - age, job.id))
    conn.commit()
    conn.close()


def _event_types(store, job_id):
    return [e["event_type"] for e in store.get_events(job_id=job_id, limit=1000)]


def _assert_paired(conversation):
    for i, turn in enumerate(conversation):
        if turn["role"] != "assistant":
            continue
        ids = [b["id"] for b in turn["content"] if b.get("type") == "tool_use"]
        if not ids:
            continue
        follow = conversation[i + 1]
        assert follow["role"] == "user"
        assert [b["tool_use_id"] for b in follow["content"]] == ids


class TestCreateJob:
    """Test job creation and the one-active-job rule."""

    @pytest.mark.asyncio
    async def test_metadata(self, manager, project):
        job = await _create(manager, project)
        assert job.status == JobStatus.PENDING
        assert job.metadata["intent"] == "build"
        assert job.metadata["iteration_budget"] == 40
        assert job.metadata["autonomy"] == "developer"
        assert job.conversation[0]["content"] == REQUEST

    @pytest.mark.asyncio
    async def test_simple_message_rejected(self, manager, project):
        with pytest.raises(SimpleMessageError):
            await _create(manager, project, request="hi")
        job = await _create(manager, project, request="hi", force=True)
        assert job.metadata["intent"] == "casual"
        assert job.metadata["iteration_budget"] == 5

    @pytest.mark.asyncio
    async def test_second_job_conflicts(self, manager, project):
        first = await _create(manager, project)
        with pytest.raises(JobConflictError) as excinfo:
            await _create(manager, project, request="Fix the failing login test")
        assert excinfo.value.active_job_id == first.id
        other = await _create(manager, project, user="bob")
        assert other.status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_tier_rejected(self, manager, project):
        with pytest.raises(ValueError):
            await _create(manager, project, autonomy="root")


@requires_git
class TestHappyPath:
    """A job that walks every phase ends committed with full scores."""

    @pytest.mark.asyncio
    async def test_full_workflow_commits(self, manager, provider, project, store):
        provider.extend(_full_workflow())
        job = await _create(manager, project)
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.COMPLETED, outcome.reason
        assert outcome.files_changed == ["src/greet.py"]
        assert outcome.iterations == 6
        head = subprocess.run(
            ["git", "rev-parse", "HEAD"], cwd=project, capture_output=True, text=True
        ).stdout.strip()
        assert outcome.commit_hash == head

        metrics = store.get_metrics(job.id)
        assert metrics["phases_visited"] == [
            "assess", "plan", "execute", "test", "verify", "confirm", "commit"
        ]
        assert metrics["violation_count"] == 0
        assert metrics["committed"] is True
        assert metrics["overall_quality_score"] == 100

        [completed] = store.get_events(job_id=job.id, event_type="job_completed")
        assert completed["metadata"] == {"filesChanged": ["src/greet.py"], "commitHash": head}
        assert store.active_job_id("alice") is None

    @pytest.mark.asyncio
    async def test_conversation_stays_paired(self, manager, provider, project, store):
        provider.extend(_full_workflow())
        job = await _create(manager, project)
        await manager.run_job(job.id)
        conversation = store.get_job(job.id).conversation
        _assert_paired(conversation)
        for call in provider.calls:
            _assert_paired(call["messages"])


class TestTierLimits:
    @pytest.mark.asyncio
    async def test_assistant_tier_completes_without_commit(self, manager, provider, project, store):
        provider.extend(_full_workflow())
        job = await _create(manager, project, autonomy="assistant")
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.COMPLETED, outcome.reason
        assert outcome.commit_hash is None
        offered = {t["name"] for t in provider.calls[0]["tools"]}
        assert "commit_changes" not in offered
        assert "write_file" in offered


class TestEnforcement:
    """Workflow violations are guided, then escalated."""

    @pytest.mark.asyncio
    async def test_three_strikes_escalate(self, manager, provider, project, store):
        provider.extend([
            [use("write_file", path="src/early.py", content="x = 1\n")] for _ in range(3)
        ])
        job = await _create(manager, project)
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.FAILED
        assert outcome.reason == "escalated"
        assert not (project / "src" / "early.py").exists()

        [incident] = store.list_incidents(job.id)
        assert incident.reason == "escalated"
        assert [v["type"] for v in incident.violations] == ["tool_block"] * 3

        failed = store.get_job(job.id)
        assert failed.metadata["escalated"] is True
        assert failed.metadata["incident_id"] == incident.id

        types = _event_types(store, job.id)
        assert types.index("job_escalated") < types.index("job_failed")

        guidance = [t for t in failed.conversation if t["kind"] == "guidance"]
        assert len(guidance) == 2
        assert guidance[0]["content"].startswith("[Workflow Enforcement] Strike 1/3")

    @pytest.mark.asyncio
    async def test_commit_without_tests_blocked(self, manager, provider, project, store):
        provider.extend([
            *_plan_and_write(),
            [
                text("🧪 Testing\n✓ Verifying\n✅ Complete\n📤 Commit"),
                use("commit_changes", message="Add greeting"),
            ],
            [text("The task is done.")],
            [text("The task is done.")],
        ])
        job = await _create(manager, project)
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.FAILED
        assert outcome.reason == "workflow incomplete: tests never ran; verification never ran"
        commit_result = store.get_job(job.id).conversation[6]["content"][0]
        assert commit_result["is_error"] is True
        assert "passing tests" in commit_result["content"]
        metrics = store.get_metrics(job.id)
        assert [v["type"] for v in metrics["violations"]] == ["test_skip"]
        assert metrics["committed"] is False

    @pytest.mark.asyncio
    async def test_done_right_after_guidance_is_not_completion(self, manager, provider, project):
        provider.extend([
            [use("write_file", path="x.py", content="x = 1\n")],
            [text("All done.")],
        ])
        job = await _create(manager, project)
        outcome = await manager.run_job(job.id)
        # The job keeps going and ends idle instead of completing.
        assert outcome.reason == "stuck"


class TestLoopEndings:
    """Test stuck detection, budgets, protocol errors and safety."""

    @pytest.mark.asyncio
    async def test_idle_turns_get_stuck(self, manager, provider, project, store):
        provider.extend([[], [], []])
        job = await _create(manager, project)
        outcome = await manager.start(job.id)

        assert outcome.status == JobStatus.FAILED
        assert outcome.reason == "stuck"
        assert outcome.iterations == 3
        assistant = [t for t in store.get_job(job.id).conversation if t["role"] == "assistant"]
        assert assistant[0]["content"] == [{"type": "text", "text": EMPTY_REPLY}]
        assert store.get_metrics(job.id)["iteration_count"] == 3

    @pytest.mark.asyncio
    async def test_budget_exhausted(self, store, provider, config, events, project):
        config.iterations.build = 2
        manager = JobManager(store, provider, config=config, events=events)
        provider.extend(_plan_and_write())
        job = await _create(manager, project)
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.FAILED
        assert outcome.iterations == 2
        assert outcome.reason == (
            "iteration budget exhausted; workflow incomplete: tests never ran; verification never ran"
        )

    @pytest.mark.asyncio
    async def test_single_protocol_error_is_retried(self, manager, provider, project, store):
        provider.extend([[text("Let me clean up."), use("rm_rf", path="/")]])
        job = await _create(manager, project)
        outcome = await manager.run_job(job.id)

        assert outcome.reason == "stuck"
        conversation = store.get_job(job.id).conversation
        notes = [t["content"] for t in conversation if t["kind"] == "note"]
        assert notes[0].startswith("[Protocol]")
        assert "Unknown tool" in notes[0]
        for turn in conversation:
            if turn["role"] == "assistant":
                assert all(b.get("name") != "rm_rf" for b in turn["content"])

    @pytest.mark.asyncio
    async def test_repeated_protocol_error_fails(self, manager, provider, project):
        provider.extend([[use("rm_rf")], [use("rm_rf")]])
        job = await _create(manager, project)
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.FAILED
        assert "Unknown tool" in outcome.reason
        assert outcome.iterations == 0

    @pytest.mark.asyncio
    async def test_unsafe_changes_rolled_back(self, manager, provider, project, store):
        provider.extend([
            _plan_and_write()[0],
            [
                text("⚡ Executing."),
                use("write_file", path="settings.py", content="DATABASE_URL = 'postgres://u:p@db/x'\n"),
            ],
            [text("All done.")],
        ])
        job = await _create(manager, project, auto_commit=False)
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.FAILED
        assert outcome.reason.startswith("Safety validation failed")
        assert not (project / "settings.py").exists()

    @pytest.mark.asyncio
    async def test_orphaned_tasks_auto_completed(self, manager, provider, project, store):
        job = await _create(manager, project, auto_commit=False)
        provider.extend([
            [text("📋 Planning."), use("create_task_list", title="Greeting", tasks=["write module", "document it"])],
            lambda messages: [
                text("⚡ Executing."),
                use("update_task", task_id=store.incomplete_tasks(job.id)[0].id, status="in_progress"),
                use("write_file", path="src/greet.py", content=GREET),
            ],
            [text("All done.")],
        ])
        outcome = await manager.run_job(job.id)

        # Open tasks keep a "done" reply from completing the job.
        assert outcome.reason == "stuck"
        tasks = store.get_task_list(store.get_job(job.id).task_list_id).tasks
        assert [(t.status, t.result) for t in tasks] == [
            ("completed", AUTO_COMPLETE_NOTE),
            ("pending", None),
        ]
        settled = [
            e for e in store.get_events(job_id=job.id, event_type="task_updated", limit=1000)
            if e["metadata"].get("result") == AUTO_COMPLETE_NOTE
        ]
        assert len(settled) == 1

    @pytest.mark.asyncio
    async def test_completed_job_cannot_run_again(self, manager, provider, project):
        provider.extend([*_plan_and_write(), [text("All done.")]])
        job = await _create(manager, project, auto_commit=False)
        outcome = await manager.run_job(job.id)
        assert outcome.status == JobStatus.COMPLETED, outcome.reason
        with pytest.raises(InvalidJobStateError):
            await manager.run_job(job.id)


class TestCancelAndResume:
    """Test cooperative cancellation and resuming from a checkpoint."""

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, manager, project, store):
        job = await _create(manager, project)
        assert await manager.cancel(job.id) is True
        assert store.get_job(job.id).status == JobStatus.INTERRUPTED
        assert "job_cancelled" in _event_types(store, job.id)
        assert await manager.cancel(job.id) is False
        await _create(manager, project)

    @pytest.mark.asyncio
    async def test_cancel_then_resume(self, manager, provider, project, store):
        job = await _create(manager, project, auto_commit=False)

        def read_then_cancel(messages):
            manager.registry.cancel(job.id, "user stop")
            return [text("🔍 Assessing."), use("read_file", path="src/app.py")]

        provider.extend([read_then_cancel])
        outcome = await manager.run_job(job.id)
        assert outcome.status == JobStatus.INTERRUPTED
        assert outcome.reason == "user stop"
        assert store.get_job(job.id).last_iteration == 1
        assert store.get_metrics(job.id) is None
        assert store.active_job_id("alice") is None

        with pytest.raises(InvalidJobStateError):
            await manager.resume(job.id, "mallory", start=False)

        provider.extend([*_plan_and_write(), [text("All done.")]])
        resumed = await manager.resume(job.id, "alice", start=False)
        assert resumed.status == JobStatus.RUNNING
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.COMPLETED, outcome.reason
        assert outcome.files_changed == ["src/greet.py"]
        assert outcome.iterations == 4
        conversation = store.get_job(job.id).conversation
        assert any(t["content"] == RESUME_NOTE for t in conversation)
        _assert_paired(conversation)

        with pytest.raises(InvalidJobStateError):
            await manager.resume(job.id, "alice", start=False)

    @pytest.mark.asyncio
    async def test_cancel_from_another_process(self, manager, provider, project, store):
        job = await _create(manager, project)

        def request_stop(messages):
            store.request_cancel(job.id, "remote stop")
            return [text("🔍 Assessing."), use("read_file", path="src/app.py")]

        provider.extend([request_stop])
        outcome = await manager.run_job(job.id)
        assert outcome.status == JobStatus.INTERRUPTED
        assert outcome.reason == "remote stop"
        assert store.cancel_requested(job.id) is None

    @pytest.mark.asyncio
    async def test_worker_stops_when_recovered_elsewhere(self, manager, provider, project):
        job = await _create(manager, project)

        def recovered_elsewhere(messages):
            manager.store.set_status(job.id, JobStatus.INTERRUPTED, failure_reason=WORKER_LOST)
            return [text("🔍 Assessing."), use("read_file", path="src/app.py")]

        provider.extend([recovered_elsewhere])
        outcome = await manager.run_job(job.id)
        assert outcome.status == JobStatus.INTERRUPTED
        assert outcome.reason == WORKER_LOST


class TestStaleWorkers:
    """A job left running by a dead worker can be recovered."""

    @pytest.fixture
    def restarted(self, store, provider, config, events):
        """A second manager over the same store, as after a process restart."""
        return JobManager(store, provider, config=config, events=events)

    @pytest.mark.asyncio
    async def test_resume_from_last_checkpoint(self, manager, restarted, provider, project, store):
        job = await _create(manager, project, auto_commit=False)
        _orphan(store, job, iteration=3)

        provider.extend([*_plan_and_write(), [text("All done.")]])
        resumed = await restarted.resume(job.id, "alice", start=False)
        assert resumed.status == JobStatus.RUNNING
        assert resumed.last_iteration == 3
        assert resumed.metadata["worker"] == restarted.worker_id

        outcome = await restarted.run_job(job.id)
        assert outcome.status == JobStatus.COMPLETED, outcome.reason
        assert outcome.iterations == 6
        [lost] = store.get_events(job_id=job.id, event_type="job_cancelled")
        assert lost["metadata"]["reason"] == WORKER_LOST
        assert lost["metadata"]["worker"] == "crashed-host:4242:abcdef"

    @pytest.mark.asyncio
    async def test_new_job_not_blocked(self, manager, restarted, project, store):
        job = await _create(manager, project)
        _orphan(store, job)

        fresh = await _create(restarted, project, request="Fix the failing login test")
        crashed = store.get_job(job.id)
        assert crashed.status == JobStatus.INTERRUPTED
        assert crashed.metadata["failure_reason"] == WORKER_LOST
        assert crashed.last_iteration == 3
        assert store.active_job_id("alice") == fresh.id

    @pytest.mark.asyncio
    async def test_cancel_ends_the_job(self, manager, restarted, project, store):
        job = await _create(manager, project)
        _orphan(store, job)

        assert await restarted.cancel(job.id) is True
        assert store.get_job(job.id).status == JobStatus.INTERRUPTED
        assert store.active_job_id("alice") is None
        assert store.cancel_requested(job.id) is None

    @pytest.mark.asyncio
    async def test_recover_all(self, manager, restarted, project, store):
        first = await _create(manager, project)
        second = await _create(manager, project, user="bob")
        _orphan(store, first)
        _orphan(store, second)

        assert sorted(await restarted.recover_stale_jobs()) == sorted([first.id, second.id])
        assert await restarted.recover_stale_jobs() == []

    @pytest.mark.asyncio
    async def test_live_heartbeat_left_alone(self, manager, restarted, project, store):
        job = await _create(manager, project)
        store.set_status(job.id, JobStatus.RUNNING, worker="other-host:1:abcdef")

        assert await restarted.recover_stale_jobs() == []
        with pytest.raises(InvalidJobStateError):
            await restarted.resume(job.id, "alice", start=False)
        with pytest.raises(JobConflictError):
            await _create(restarted, project, request="Fix the failing login test")
        assert await restarted.cancel(job.id, "stop") is True
        assert store.cancel_requested(job.id) == "stop"
        assert store.get_job(job.id).status == JobStatus.RUNNING


class TestLoopSafeguards:
    """Build jobs that only read, or change nothing, fail."""

    @pytest.mark.asyncio
    async def test_reading_forever_halts(self, manager, provider, project, store):
        provider.extend([
            [text("🔍 Assessing."), use("read_file", path="src/app.py")],
            *[[use("search_code", pattern="hello")] for _ in range(4)],
            [use("read_file", path="README.md")],
        ])
        job = await _create(manager, project)
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.FAILED
        assert outcome.reason == "investigation only: 5 consecutive read-only iterations"
        assert outcome.iterations == 5
        assert store.list_incidents(job.id) == []

    @pytest.mark.asyncio
    async def test_read_only_limit_configurable(self, store, provider, config, events, project):
        config.loop.max_read_only_iterations = 2
        manager = JobManager(store, provider, config=config, events=events)
        provider.extend([
            [text("🔍 Assessing."), use("read_file", path="src/app.py")],
            [text("📋 Planning."), use("create_task_list", title="Greeting", tasks=["write module"])],
            [use("list_files")],
            [use("read_file", path="README.md")],
        ])
        job = await _create(manager, project)
        outcome = await manager.run_job(job.id)

        # Planning resets the streak, so the job stops on the fourth turn.
        assert outcome.iterations == 4
        assert outcome.reason.startswith("investigation only: 2")

    @pytest.mark.asyncio
    async def test_build_without_changes_fails_with_incident(self, manager, provider, project, store):
        provider.extend([
            [text("🔍 Assessing."), use("read_file", path="src/app.py")],
            [text("📋 Planning."), use("list_files", pattern="**/*.py")],
            [text("Nothing needed changing. The task is done.")],
        ])
        job = await _create(manager, project)
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.FAILED
        assert outcome.reason == NO_CHANGES_REASON
        [incident] = store.list_incidents(job.id)
        assert incident.reason == NO_CHANGES_REASON
        assert incident.phase == "plan"
        assert store.get_job(job.id).metadata["incident_id"] == incident.id


class TestSubagents:
    """start_subagent runs a bounded child loop under the parent's rules."""

    @pytest.mark.asyncio
    async def test_child_changes_and_summary_reach_the_parent(self, manager, provider, project, store):
        task = "Write src/greet.py with a greet function"
        provider.extend([
            [text("🔍 Assessing."), use("read_file", path="src/app.py")],
            [text("📋 Planning."), use("list_files", pattern="**/*.py")],
            [text("⚡ Executing."), use("start_subagent", task=task)],
            [use("write_file", path="src/greet.py", content=GREET)],
            [text("Wrote src/greet.py with greet().")],
            [text("All done.")],
        ])
        job = await _create(manager, project, auto_commit=False)
        outcome = await manager.run_job(job.id)

        assert outcome.status == JobStatus.COMPLETED, outcome.reason
        assert outcome.files_changed == ["src/greet.py"]
        assert outcome.iterations == 4

        child = provider.calls[3]
        assert child["system"] == SUBAGENT_PREAMBLE
        assert child["messages"][0]["content"] == task
        offered = {t["name"] for t in child["tools"]}
        assert "write_file" in offered
        assert offered.isdisjoint({"start_subagent", "commit_changes"})

        conversation = store.get_job(job.id).conversation
        assert _tool_results(conversation)[2]["content"] == "Wrote src/greet.py with greet()."
        _assert_paired(conversation)
        assert store.get_metrics(job.id)["input_tokens"] == 6 * provider.input_tokens

    @pytest.mark.asyncio
    async def test_child_is_capped_and_cannot_nest(self, store, provider, config, events, project):
        config.loop.subagent_max_iterations = 2
        manager = JobManager(store, provider, config=config, events=events)
        provider.extend([
            [text("🔍 Assessing."), use("start_subagent", task="Survey the code", max_iterations=5)],
            [use("start_subagent", task="Survey it for me")],
            [use("read_file", path="src/app.py")],
        ])
        job = await _create(manager, project)
        await manager.run_job(job.id)

        nested = provider.calls[2]["messages"][-1]["content"][0]
        assert nested["is_error"] is True
        assert nested["content"] == "start_subagent is not available to a sub-agent"
        [result] = _tool_results(store.get_job(job.id).conversation)
        assert result["content"] == "Sub-agent stopped after 2 iterations. Last report: (none)"

    @pytest.mark.asyncio
    async def test_child_obeys_the_parent_phase(self, manager, provider, project, store):
        provider.extend([
            [text("🔍 Assessing."), use("start_subagent", task="Fix it")],
            [use("write_file", path="src/early.py", content="x = 1\n")],
            [text("I could not write the file.")],
        ])
        job = await _create(manager, project)
        await manager.run_job(job.id)

        assert not (project / "src" / "early.py").exists()
        [result] = _tool_results(store.get_job(job.id).conversation)
        assert result["content"] == "I could not write the file."
        metrics = store.get_metrics(job.id)
        assert [v["type"] for v in metrics["violations"]][:1] == ["tool_block"]
