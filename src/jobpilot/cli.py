"""JobPilot CLI: hand a coding job to the autonomous agent loop.

Usage:
    jobpilot run "add input validation to the signup form"   # Run a job
    jobpilot run -w ../api --autonomy assistant "fix the flaky test"
    jobpilot status [job-id]                                 # Job status
    jobpilot jobs                                            # List jobs
    jobpilot cancel <job-id>                                 # Cooperative cancel
    jobpilot resume <job-id>                                 # Resume from checkpoint
    jobpilot recover                                         # Interrupt jobs of dead workers
    jobpilot metrics <job-id>                                # Workflow metrics
    jobpilot events [job-id]                                 # Event timeline
    jobpilot config <section.key>=<value>                    # Set configuration
"""

import asyncio
import datetime
import getpass
import json
import logging
import os
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from jobpilot.config import JOBPILOT_DB, JOBPILOT_LOGS, JobPilotConfig, ensure_jobpilot_home
from jobpilot.errors import JobPilotError
from jobpilot.events import EventCollector
from jobpilot.jobs import JobManager
from jobpilot.provider import AnthropicProvider
from jobpilot.store import JobStatus, JobStore

console = Console()

STATUS_COLORS = {
    "pending": "yellow",
    "running": "blue",
    "completed": "green",
    "failed": "red",
    "interrupted": "magenta",
}

EVENT_COLORS = {
    "job_started": "blue",
    "job_progress": "dim",
    "job_content": "white",
    "file_change": "cyan",
    "task_list_created": "cyan",
    "task_updated": "cyan",
    "job_escalated": "bold yellow",
    "job_completed": "green",
    "job_failed": "red",
    "job_cancelled": "magenta",
}


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _setup_logging(verbose: bool) -> None:
    ensure_jobpilot_home()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    handler = logging.FileHandler(JOBPILOT_LOGS / "jobpilot.log")
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def _default_user() -> str:
    return os.environ.get("JOBPILOT_USER") or getpass.getuser()


def _store() -> JobStore:
    ensure_jobpilot_home()
    return JobStore(JOBPILOT_DB)


def _status_label(status: JobStatus) -> str:
    color = STATUS_COLORS.get(status.value, "white")
    return f"[{color}]{status.value}[/]"


def _print_event(event: dict) -> None:
    etype = event["event_type"]
    meta = event.get("metadata") or {}
    if etype == "job_content":
        text = meta.get("text", event["summary"])
        if len(text) > 200:
            text = text[:200] + "..."
        console.print(f"[green]{text}[/]")
    elif etype == "file_change":
        console.print(f"[cyan]  {meta.get('operation', '?')} {meta.get('path', '')}[/]")
    elif etype == "job_progress":
        console.print(f"[dim]{event['summary']}[/]")
    elif etype == "job_escalated":
        console.print(f"\n[bold yellow]Escalated:[/] {event['summary']}\n")
    elif etype in ("task_list_created", "task_updated"):
        console.print(f"[cyan]  [{etype}] {event['summary']}[/]")


def _print_outcome(outcome) -> None:
    status = outcome.status.value
    color = STATUS_COLORS.get(status, "white")
    lines = [f"Status: [{color}]{status}[/]", f"Iterations: {outcome.iterations}"]
    if outcome.reason:
        lines.append(f"Reason: {outcome.reason}")
    if outcome.files_changed:
        lines.append(f"Files changed: {', '.join(outcome.files_changed)}")
    if outcome.commit_hash:
        lines.append(f"Commit: {outcome.commit_hash[:12]}")
    if outcome.metrics:
        lines.append(f"Quality score: {outcome.metrics['overall_quality_score']}")
    console.print(Panel("\n".join(lines), title=f"Job {outcome.job_id}"))


async def _with_manager(cfg: JobPilotConfig, body):
    """Build a JobManager with a live provider, run ``body(manager)``, clean up."""
    store = _store()
    events = EventCollector(store)
    events.add_listener(_print_event)
    provider = AnthropicProvider(cfg.provider)
    try:
        return await body(JobManager(store, provider, cfg, events=events))
    finally:
        await provider.aclose()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose):
    """JobPilot: autonomous coding jobs with workflow enforcement.

    Examples:
        jobpilot run "fix the login bug in auth"
        jobpilot status
    """
    _setup_logging(verbose)


# --- Job execution ---


@cli.command()
@click.argument("request", nargs=-1, required=True)
@click.option("--workspace", "-w", default=".", type=click.Path(exists=True, file_okay=False),
              help="Project directory the job works in")
@click.option("--autonomy", "-a", default=None,
              type=click.Choice(["observer", "assistant", "developer", "autonomous"]),
              help="Autonomy tier (default from config)")
@click.option("--commit/--no-commit", "auto_commit", default=None,
              help="Commit all changes when the job completes")
@click.option("--force", "-f", is_flag=True, help="Run even if the request looks conversational")
@click.option("--user", "-u", default=None, help="User id (default: $JOBPILOT_USER or login)")
def run(request, workspace, autonomy, auto_commit, force, user):
    """Run a job in the foreground.

    Examples:
        jobpilot run "build a todo app with auth"
        jobpilot run --no-commit "refactor the config loader"
    """
    cfg = JobPilotConfig.load()
    if not cfg.provider.api_key:
        console.print("[bold red]ANTHROPIC_API_KEY is not set[/]")
        sys.exit(1)
    text = " ".join(request)
    user_id = user or _default_user()

    async def body(manager: JobManager):
        job = await manager.create_job(
            user_id, text,
            workspace=os.path.abspath(workspace),
            autonomy=autonomy,
            auto_commit=auto_commit,
            force=force,
        )
        meta = job.metadata
        console.print(f"\n[bold blue]JobPilot[/] {job.id}: [italic]{text}[/]")
        console.print(
            f"Intent: {meta['intent']} | Budget: {meta['iteration_budget']} iterations | "
            f"Autonomy: {meta['autonomy']} | Auto-commit: {meta['auto_commit']}\n"
        )
        return await manager.run_job(job.id)

    try:
        outcome = _run_async(_with_manager(cfg, body))
    except JobPilotError as e:
        console.print(f"[bold red]{type(e).__name__}:[/] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. Resume with: jobpilot resume <job-id>[/]")
        sys.exit(130)
    _print_outcome(outcome)
    if outcome.status != JobStatus.COMPLETED:
        sys.exit(1)


@cli.command()
@click.argument("job_id")
@click.option("--user", "-u", default=None, help="User id (default: $JOBPILOT_USER or login)")
def resume(job_id, user):
    """Resume an interrupted or failed job from its last checkpoint."""
    cfg = JobPilotConfig.load()
    user_id = user or _default_user()

    async def body(manager: JobManager):
        await manager.resume(job_id, user_id, start=False)
        console.print(f"\n[bold blue]Resuming[/] {job_id}\n")
        return await manager.run_job(job_id)

    try:
        outcome = _run_async(_with_manager(cfg, body))
    except JobPilotError as e:
        console.print(f"[bold red]{type(e).__name__}:[/] {e}")
        sys.exit(1)
    _print_outcome(outcome)


@cli.command()
@click.argument("job_id")
@click.option("--reason", "-r", default="cancelled by user", help="Reason recorded on the job")
def cancel(job_id, reason):
    """Cancel a job. Running jobs stop at the next iteration boundary."""
    store = _store()
    manager = JobManager(store, provider=None, config=JobPilotConfig.load())
    if _run_async(manager.cancel(job_id, reason)):
        console.print(f"[green]Cancellation requested for {job_id}[/]")
    else:
        console.print(f"[yellow]Job {job_id} is not active[/]")


@cli.command()
@click.option("--user", "-u", default=None, help="Only this user's jobs")
def recover(user):
    """Mark running jobs whose worker died as interrupted."""
    manager = JobManager(_store(), provider=None, config=JobPilotConfig.load())
    recovered = _run_async(manager.recover_stale_jobs(user))
    if not recovered:
        console.print("[dim]No stale jobs.[/]")
        return
    for job_id in recovered:
        console.print(f"[magenta]Interrupted {job_id}[/] (resume with: jobpilot resume {job_id})")


# --- Inspection ---


@cli.command()
@click.argument("job_id", required=False)
def status(job_id):
    """Show a job (default: the most recent one)."""
    store = _store()
    if job_id:
        job = store.get_job(job_id)
    else:
        recent = store.list_jobs(limit=1)
        job = recent[0] if recent else None
    if job is None:
        console.print("[dim]No jobs yet.[/]")
        return

    meta = job.metadata
    table = Table(title=f"Job {job.id}", show_header=False)
    table.add_row("Request", job.request)
    table.add_row("Status", _status_label(job.status))
    table.add_row("User", job.user_id)
    table.add_row("Workspace", meta.get("workspace", ""))
    table.add_row("Intent", meta.get("intent", ""))
    table.add_row("Iteration", f"{job.last_iteration}/{meta.get('iteration_budget', '?')}")
    table.add_row("Phase", (meta.get("workflow") or {}).get("phase", "assess"))
    table.add_row("Strikes", str((meta.get("enforcement") or {}).get("strikes", 0)))
    if meta.get("failure_reason"):
        table.add_row("Reason", f"[red]{meta['failure_reason']}[/]")
    if meta.get("commit_hash"):
        table.add_row("Commit", meta["commit_hash"][:12])
    console.print(table)

    if job.task_list_id:
        task_list = store.get_task_list(job.task_list_id)
        if task_list:
            tasks = Table(title=task_list.title)
            tasks.add_column("ID", style="dim")
            tasks.add_column("Task")
            tasks.add_column("Status")
            tasks.add_column("Result", style="dim")
            for t in task_list.tasks:
                tasks.add_row(t.id, t.title, t.status, (t.result or "")[:60])
            console.print(tasks)


@cli.command()
@click.option("--user", "-u", default=None, help="Only this user's jobs")
@click.option("--status", "-s", "status_filter", default=None,
              type=click.Choice([s.value for s in JobStatus]), help="Filter by status")
@click.option("--limit", "-n", default=20, help="Number of jobs to show")
def jobs(user, status_filter, limit):
    """List recent jobs."""
    store = _store()
    rows = store.list_jobs(
        user_id=user,
        status=JobStatus(status_filter) if status_filter else None,
        limit=limit,
    )
    if not rows:
        console.print("[dim]No jobs yet.[/]")
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="dim")
    table.add_column("User")
    table.add_column("Status")
    table.add_column("Intent")
    table.add_column("Iter")
    table.add_column("Created", style="dim")
    table.add_column("Request")
    for job in rows:
        created = datetime.datetime.fromtimestamp(job.created_at).strftime("%Y-%m-%d %H:%M")
        table.add_row(
            job.id,
            job.user_id,
            _status_label(job.status),
            job.metadata.get("intent", ""),
            str(job.last_iteration),
            created,
            job.request[:50],
        )
    console.print(table)


@cli.command()
@click.argument("job_id")
def metrics(job_id):
    """Show finalized workflow metrics for a job."""
    store = _store()
    data = store.get_metrics(job_id)
    if data is None:
        console.print(f"[dim]No metrics for {job_id} (job still running or unknown).[/]")
        return

    table = Table(title=f"Workflow Metrics: {job_id}", show_header=False)
    table.add_row("Phases visited", ", ".join(data["phases_visited"]))
    table.add_row("Phases skipped", ", ".join(data["skipped_phases"]) or "-")
    table.add_row("Violations", str(data["violation_count"]))
    table.add_row("Iterations", str(data["iteration_count"]))
    table.add_row("Tokens", f"{data['input_tokens']} in / {data['output_tokens']} out")
    table.add_row("Avg tokens/iteration", str(data["avg_tokens_per_iteration"]))
    table.add_row("Tests", "passed" if data["tests_passed"] else ("failed" if data["tests_run"] else "not run"))
    table.add_row("Verified", str(data["verification_complete"]))
    table.add_row("Commit", (data.get("commit_hash") or "-")[:12])
    table.add_row("Duration", f"{data['total_duration_s']:.1f}s")
    table.add_row("Phase compliance", str(data["phase_compliance_score"]))
    table.add_row("Test coverage", str(data["test_coverage_score"]))
    table.add_row("Token efficiency", str(data["token_efficiency_score"]))
    table.add_row("Overall quality", f"[bold]{data['overall_quality_score']}[/]")
    console.print(table)

    incidents = store.list_incidents(job_id=job_id)
    for incident in incidents:
        body = "\n".join(f"- ({v['type']}, {v['phase']}) {v['message']}" for v in incident.violations)
        console.print(Panel(body or "-", title=f"Incident #{incident.id}: {incident.reason}",
                            border_style="yellow"))


@cli.command()
@click.argument("job_id", required=False)
@click.option("--limit", "-n", default=50, help="Number of events to show")
@click.option("--type", "-T", "event_type", default=None, help="Filter by event type")
def events(job_id, limit, event_type):
    """Show the event timeline.

    Examples:
        jobpilot events                      # all recent events
        jobpilot events job-1a2b -T job_failed
    """
    store = _store()
    rows = store.get_events(job_id=job_id, event_type=event_type, limit=limit)
    if not rows:
        console.print("[dim]No events yet.[/]")
        return

    table = Table(title="Events")
    table.add_column("Time", style="dim")
    table.add_column("Type")
    table.add_column("Summary")
    table.add_column("Job", style="dim")
    for e in rows:
        ts = datetime.datetime.fromtimestamp(e["timestamp"]).strftime("%H:%M:%S")
        color = EVENT_COLORS.get(e["event_type"], "white")
        table.add_row(ts, f"[{color}]{e['event_type']}[/]", e["summary"][:60], e["job_id"] or "")
    console.print(table)


# --- Config ---


@cli.command()
@click.argument("key_value", nargs=-1)
def config(key_value):
    """View or set JobPilot configuration.

    Examples:
        jobpilot config                               # show all
        jobpilot config provider.model=claude-opus-4-6
        jobpilot config loop.stuck_threshold=4
        jobpilot config auto_commit=false
    """
    cfg = JobPilotConfig.load()
    if not key_value:
        data = cfg.to_dict()
        data["provider"]["api_key"] = "set" if cfg.provider.api_key else ""
        console.print_json(json.dumps(data))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        console.print("[yellow]Usage: jobpilot config section.key=value[/]")
        return
    key, value = (part.strip() for part in kv.split("=", 1))

    if key == "auto_commit":
        cfg.auto_commit = value.lower() in ("1", "true", "yes", "on")
    else:
        section_name, _, field_name = key.partition(".")
        section = getattr(cfg, section_name, None)
        if section is None or not field_name or not hasattr(section, field_name) or field_name == "api_key":
            console.print(f"[red]Unknown config key: {key}[/]")
            return
        current = getattr(section, field_name)
        try:
            setattr(section, field_name, _coerce(value, current))
        except ValueError as e:
            console.print(f"[red]Invalid value for {key}: {e}[/]")
            return

    cfg.save()
    console.print(f"[green]Set {key} = {value}[/]")


def _coerce(value: str, current):
    if isinstance(current, bool):
        return value.lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, (list, dict)):
        return json.loads(value)
    return value


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
