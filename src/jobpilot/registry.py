"""Job registry: the per-user active slot and per-job cancellation tokens.

The slot lives in the store (``active_jobs`` keyed by user id), so two
processes sharing a database still cannot run two jobs for one user.
Cancellation tokens are in-process: a worker polls its token between
iterations and tool batches, never in the middle of a tool call.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from jobpilot.store import Job, JobStore

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag handed down to the loop and tools."""

    def __init__(self):
        self._cancelled = False
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason


class JobRegistry:
    """Atomic create-if-absent over the user's active-job slot."""

    def __init__(self, store: JobStore):
        self._store = store
        self._tokens: dict[str, CancellationToken] = {}
        self._lock = asyncio.Lock()

    async def create_if_absent(self, user_id: str, metadata: dict, conversation: list[dict]) -> Job:
        """Create a pending job for ``user_id`` unless one is already active.

        Raises JobConflictError when the user already holds the slot.
        """
        job_id = f"job-{uuid.uuid4().hex[:12]}"
        async with self._lock:
            job = await asyncio.to_thread(
                self._store.insert_job_if_idle, job_id, user_id, metadata, conversation
            )
            self._tokens[job_id] = CancellationToken()
        logger.info("Job %s created for user %s", job_id, user_id)
        return job

    async def reacquire(self, user_id: str, job_id: str) -> CancellationToken:
        """Take the slot again for a job being resumed."""
        async with self._lock:
            await asyncio.to_thread(self._store.claim_slot, user_id, job_id)
            token = CancellationToken()
            self._tokens[job_id] = token
        return token

    async def release(self, user_id: str, job_id: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._store.release_slot, user_id, job_id)
            self._tokens.pop(job_id, None)

    def active_job_id(self, user_id: str) -> str | None:
        return self._store.active_job_id(user_id)

    def token(self, job_id: str) -> CancellationToken:
        """Token for a job, created on first use (e.g. after a restart)."""
        return self._tokens.setdefault(job_id, CancellationToken())

    def cancel(self, job_id: str, reason: str = "cancelled by user") -> bool:
        token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info("Cancellation requested for job %s: %s", job_id, reason)
        return True
