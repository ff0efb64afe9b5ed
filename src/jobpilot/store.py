"""Persistence layer: SQLite store for jobs and everything hanging off them.

Tables:
- jobs: status, conversation log, last checkpointed iteration, metadata
- active_jobs: one row per user holding a pending/running job (the slot)
- task_lists / tasks: the agent's user-visible plan
- workflow_metrics: finalized metrics, one row per job
- incidents: escalation handoff records
- job_events: event timeline
- cancel_requests: cancellation asked for from another process
"""

import json
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from jobpilot.config import JOBPILOT_DB
from jobpilot.errors import InvalidJobStateError, JobConflictError, JobNotFoundError


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.INTERRUPTED)


VALID_STATUS_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.INTERRUPTED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.INTERRUPTED},
    JobStatus.INTERRUPTED: {JobStatus.RUNNING},
    JobStatus.FAILED: {JobStatus.RUNNING},
    JobStatus.COMPLETED: set(),
}

RESUMABLE = {JobStatus.INTERRUPTED, JobStatus.FAILED}


class TaskStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class Job:
    """A unit of agentic work."""

    id: str
    user_id: str
    status: JobStatus
    conversation: list[dict]
    last_iteration: int
    task_list_id: str | None
    metadata: dict
    created_at: float
    updated_at: float

    @property
    def request(self) -> str:
        return self.metadata.get("request", "")


@dataclass
class Task:
    id: str
    task_list_id: str
    job_id: str
    position: int
    title: str
    status: str
    result: str | None
    updated_at: float


@dataclass
class TaskList:
    id: str
    job_id: str
    title: str
    created_at: float
    tasks: list[Task] = field(default_factory=list)


@dataclass
class Incident:
    """Handoff record for a higher-trust reviewer."""

    id: int
    job_id: str
    user_id: str
    reason: str
    phase: str
    violations: list[dict]
    created_at: float
    resolved: bool = False


def _row_to_job(row) -> Job:
    return Job(
        id=row[0],
        user_id=row[1],
        status=JobStatus(row[2]),
        conversation=json.loads(row[3] or "[]"),
        last_iteration=row[4],
        task_list_id=row[5],
        metadata=json.loads(row[6] or "{}"),
        created_at=row[7],
        updated_at=row[8],
    )


class JobStore:
    """SQLite-backed job persistence."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or JOBPILOT_DB
        self._init_db()

    def _init_db(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                status TEXT DEFAULT 'pending',
                conversation_json TEXT,
                last_iteration INTEGER DEFAULT 0,
                task_list_id TEXT,
                metadata_json TEXT,
                created_at REAL,
                updated_at REAL
            );

            CREATE TABLE IF NOT EXISTS active_jobs (
                user_id TEXT PRIMARY KEY,
                job_id TEXT NOT NULL,
                acquired_at REAL
            );

            CREATE TABLE IF NOT EXISTS task_lists (
                id TEXT PRIMARY KEY,
                job_id TEXT,
                title TEXT,
                created_at REAL
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                task_list_id TEXT,
                job_id TEXT,
                position INTEGER,
                title TEXT,
                status TEXT DEFAULT 'pending',
                result TEXT,
                updated_at REAL
            );

            CREATE TABLE IF NOT EXISTS workflow_metrics (
                job_id TEXT PRIMARY KEY,
                metrics_json TEXT,
                created_at REAL
            );

            CREATE TABLE IF NOT EXISTS incidents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT,
                user_id TEXT,
                reason TEXT,
                phase TEXT,
                violations_json TEXT,
                created_at REAL,
                resolved INTEGER DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS job_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL,
                event_type TEXT,
                summary TEXT,
                job_id TEXT,
                user_id TEXT,
                metadata_json TEXT
            );

            CREATE TABLE IF NOT EXISTS cancel_requests (
                job_id TEXT PRIMARY KEY,
                reason TEXT,
                requested_at REAL
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_user ON jobs(user_id);
            CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
            CREATE INDEX IF NOT EXISTS idx_tasks_list ON tasks(task_list_id);
            CREATE INDEX IF NOT EXISTS idx_events_job ON job_events(job_id);
        """)
        conn.commit()
        conn.close()

    # --- Jobs ---

    def insert_job_if_idle(
        self, job_id: str, user_id: str, metadata: dict, conversation: list[dict]
    ) -> Job:
        """Create a pending job and claim the user's active slot atomically.

        A slot left behind by a job that is no longer pending/running (a
        crashed worker) is reclaimed. Raises JobConflictError otherwise.
        """
        now = time.time()
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT a.job_id, j.status FROM active_jobs a "
                "LEFT JOIN jobs j ON j.id = a.job_id WHERE a.user_id = ?",
                (user_id,),
            ).fetchone()
            if row:
                holder, status = row
                if status in (JobStatus.PENDING.value, JobStatus.RUNNING.value):
                    conn.execute("ROLLBACK")
                    raise JobConflictError(user_id, holder)
                conn.execute("DELETE FROM active_jobs WHERE user_id = ?", (user_id,))
            conn.execute(
                "INSERT INTO active_jobs (user_id, job_id, acquired_at) VALUES (?, ?, ?)",
                (user_id, job_id, now),
            )
            conn.execute(
                "INSERT INTO jobs (id, user_id, status, conversation_json, last_iteration, "
                "task_list_id, metadata_json, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, 0, NULL, ?, ?, ?)",
                (
                    job_id, user_id, JobStatus.PENDING.value, json.dumps(conversation),
                    json.dumps(metadata), now, now,
                ),
            )
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as e:
            conn.execute("ROLLBACK")
            raise JobConflictError(user_id, self.active_job_id(user_id) or "unknown") from e
        finally:
            conn.close()
        return Job(
            id=job_id, user_id=user_id, status=JobStatus.PENDING, conversation=conversation,
            last_iteration=0, task_list_id=None, metadata=metadata, created_at=now, updated_at=now,
        )

    def claim_slot(self, user_id: str, job_id: str) -> None:
        """Re-acquire the active slot for an existing job (resume)."""
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT a.job_id, j.status FROM active_jobs a "
                "LEFT JOIN jobs j ON j.id = a.job_id WHERE a.user_id = ?",
                (user_id,),
            ).fetchone()
            if row and row[0] != job_id and row[1] in (
                JobStatus.PENDING.value, JobStatus.RUNNING.value
            ):
                conn.execute("ROLLBACK")
                raise JobConflictError(user_id, row[0])
            conn.execute(
                "INSERT OR REPLACE INTO active_jobs (user_id, job_id, acquired_at) VALUES (?, ?, ?)",
                (user_id, job_id, time.time()),
            )
            conn.execute("COMMIT")
        finally:
            conn.close()

    def release_slot(self, user_id: str, job_id: str) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "DELETE FROM active_jobs WHERE user_id = ? AND job_id = ?", (user_id, job_id)
        )
        conn.commit()
        conn.close()

    def active_job_id(self, user_id: str) -> str | None:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(
            "SELECT job_id FROM active_jobs WHERE user_id = ?", (user_id,)
        ).fetchone()
        conn.close()
        return row[0] if row else None

    def get_job(self, job_id: str) -> Job | None:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(
            "SELECT id, user_id, status, conversation_json, last_iteration, task_list_id, "
            "metadata_json, created_at, updated_at FROM jobs WHERE id = ?",
            (job_id,),
        ).fetchone()
        conn.close()
        if not row:
            return None
        return _row_to_job(row)

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def list_jobs(
        self, user_id: str | None = None, status: JobStatus | None = None, limit: int = 50
    ) -> list[Job]:
        conn = sqlite3.connect(self.db_path)
        query = (
            "SELECT id, user_id, status, conversation_json, last_iteration, task_list_id, "
            "metadata_json, created_at, updated_at FROM jobs WHERE 1=1"
        )
        params: list = []
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [_row_to_job(r) for r in rows]

    def set_status(self, job_id: str, status: JobStatus, **metadata_updates) -> Job:
        """Move a job to ``status``, merging ``metadata_updates`` into its metadata.

        Raises InvalidJobStateError for transitions outside
        VALID_STATUS_TRANSITIONS.
        """
        job = self.require_job(job_id)
        if status != job.status and status not in VALID_STATUS_TRANSITIONS[job.status]:
            raise InvalidJobStateError(
                f"Invalid job transition: {job.status.value} -> {status.value}"
            )
        job.metadata.update(metadata_updates)
        job.status = status
        job.updated_at = time.time()
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "UPDATE jobs SET status = ?, metadata_json = ?, updated_at = ? WHERE id = ?",
            (status.value, json.dumps(job.metadata), job.updated_at, job_id),
        )
        conn.commit()
        conn.close()
        return job

    def save_checkpoint(
        self, job_id: str, conversation: list[dict], iteration: int, metadata: dict
    ) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "UPDATE jobs SET conversation_json = ?, last_iteration = ?, metadata_json = ?, "
            "updated_at = ? WHERE id = ?",
            (json.dumps(conversation), iteration, json.dumps(metadata), time.time(), job_id),
        )
        conn.commit()
        conn.close()

    # --- Task lists ---

    def create_task_list(self, job_id: str, title: str, titles: list[str]) -> TaskList:
        now = time.time()
        list_id = f"tl-{uuid.uuid4().hex[:12]}"
        tasks = [
            Task(
                id=f"{list_id}-{i + 1}", task_list_id=list_id, job_id=job_id, position=i,
                title=t, status=TaskStatus.PENDING.value, result=None, updated_at=now,
            )
            for i, t in enumerate(titles)
        ]
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT INTO task_lists (id, job_id, title, created_at) VALUES (?, ?, ?, ?)",
            (list_id, job_id, title, now),
        )
        conn.executemany(
            "INSERT INTO tasks (id, task_list_id, job_id, position, title, status, result, "
            "updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (t.id, t.task_list_id, t.job_id, t.position, t.title, t.status, t.result, now)
                for t in tasks
            ],
        )
        conn.execute(
            "UPDATE jobs SET task_list_id = ?, updated_at = ? WHERE id = ?", (list_id, now, job_id)
        )
        conn.commit()
        conn.close()
        return TaskList(id=list_id, job_id=job_id, title=title, created_at=now, tasks=tasks)

    def get_task_list(self, task_list_id: str) -> TaskList | None:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(
            "SELECT id, job_id, title, created_at FROM task_lists WHERE id = ?", (task_list_id,)
        ).fetchone()
        if not row:
            conn.close()
            return None
        rows = conn.execute(
            "SELECT * FROM tasks WHERE task_list_id = ? ORDER BY position", (task_list_id,)
        ).fetchall()
        conn.close()
        return TaskList(*row, tasks=[Task(*r) for r in rows])

    def get_task(self, task_id: str) -> Task | None:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        conn.close()
        return Task(*row) if row else None

    def update_task(self, task_id: str, status: TaskStatus, result: str | None = None) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise KeyError(f"Task not found: {task_id}")
        task.status = status.value
        if result is not None:
            task.result = result
        task.updated_at = time.time()
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "UPDATE tasks SET status = ?, result = ?, updated_at = ? WHERE id = ?",
            (task.status, task.result, task.updated_at, task_id),
        )
        conn.commit()
        conn.close()
        return task

    def incomplete_tasks(self, job_id: str) -> list[Task]:
        conn = sqlite3.connect(self.db_path)
        rows = conn.execute(
            "SELECT * FROM tasks WHERE job_id = ? AND status IN (?, ?) ORDER BY position",
            (job_id, TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value),
        ).fetchall()
        conn.close()
        return [Task(*r) for r in rows]

    def complete_orphaned_tasks(self, job_id: str, note: str) -> list[Task]:
        """Force-complete tasks left ``in_progress``; returns the ones touched."""
        conn = sqlite3.connect(self.db_path)
        rows = conn.execute(
            "SELECT * FROM tasks WHERE job_id = ? AND status = ?",
            (job_id, TaskStatus.IN_PROGRESS.value),
        ).fetchall()
        now = time.time()
        conn.execute(
            "UPDATE tasks SET status = ?, result = ?, updated_at = ? "
            "WHERE job_id = ? AND status = ?",
            (TaskStatus.COMPLETED.value, note, now, job_id, TaskStatus.IN_PROGRESS.value),
        )
        conn.commit()
        conn.close()
        touched = [Task(*r) for r in rows]
        for t in touched:
            t.status = TaskStatus.COMPLETED.value
            t.result = note
            t.updated_at = now
        return touched

    # --- Cancellation ---

    def request_cancel(self, job_id: str, reason: str) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT OR REPLACE INTO cancel_requests (job_id, reason, requested_at) VALUES (?, ?, ?)",
            (job_id, reason, time.time()),
        )
        conn.commit()
        conn.close()

    def cancel_requested(self, job_id: str) -> str | None:
        """Reason of a pending cancel request, or None."""
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(
            "SELECT reason FROM cancel_requests WHERE job_id = ?", (job_id,)
        ).fetchone()
        conn.close()
        return row[0] if row else None

    def clear_cancel_request(self, job_id: str) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.execute("DELETE FROM cancel_requests WHERE job_id = ?", (job_id,))
        conn.commit()
        conn.close()

    # --- Metrics ---

    def save_metrics(self, job_id: str, metrics: dict) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT OR REPLACE INTO workflow_metrics (job_id, metrics_json, created_at) "
            "VALUES (?, ?, ?)",
            (job_id, json.dumps(metrics), time.time()),
        )
        conn.commit()
        conn.close()

    def get_metrics(self, job_id: str) -> dict | None:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(
            "SELECT metrics_json FROM workflow_metrics WHERE job_id = ?", (job_id,)
        ).fetchone()
        conn.close()
        return json.loads(row[0]) if row else None

    # --- Incidents ---

    def create_incident(
        self, job_id: str, user_id: str, reason: str, phase: str, violations: list[dict]
    ) -> Incident:
        now = time.time()
        conn = sqlite3.connect(self.db_path)
        cursor = conn.execute(
            "INSERT INTO incidents (job_id, user_id, reason, phase, violations_json, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (job_id, user_id, reason, phase, json.dumps(violations), now),
        )
        incident_id = cursor.lastrowid
        conn.commit()
        conn.close()
        return Incident(incident_id, job_id, user_id, reason, phase, violations, now)

    def list_incidents(self, job_id: str | None = None, unresolved_only: bool = False) -> list[Incident]:
        conn = sqlite3.connect(self.db_path)
        query = "SELECT * FROM incidents WHERE 1=1"
        params: list = []
        if job_id:
            query += " AND job_id = ?"
            params.append(job_id)
        if unresolved_only:
            query += " AND resolved = 0"
        query += " ORDER BY created_at DESC"
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [
            Incident(r[0], r[1], r[2], r[3], r[4], json.loads(r[5] or "[]"), r[6], bool(r[7]))
            for r in rows
        ]

    # --- Events ---

    def record_event(
        self,
        event_type: str,
        summary: str,
        job_id: str | None = None,
        user_id: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        conn = sqlite3.connect(self.db_path)
        cursor = conn.execute(
            "INSERT INTO job_events (timestamp, event_type, summary, job_id, user_id, metadata_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (time.time(), event_type, summary, job_id, user_id, json.dumps(metadata or {})),
        )
        event_id = cursor.lastrowid
        conn.commit()
        conn.close()
        return event_id

    def get_events(
        self, job_id: str | None = None, event_type: str | None = None, limit: int = 100
    ) -> list[dict]:
        conn = sqlite3.connect(self.db_path)
        query = "SELECT * FROM job_events WHERE 1=1"
        params: list = []
        if job_id:
            query += " AND job_id = ?"
            params.append(job_id)
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        query += " ORDER BY id ASC LIMIT ?"
        params.append(limit)
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [
            {
                "id": r[0],
                "timestamp": r[1],
                "event_type": r[2],
                "summary": r[3],
                "job_id": r[4],
                "user_id": r[5],
                "metadata": json.loads(r[6] or "{}"),
            }
            for r in rows
        ]
