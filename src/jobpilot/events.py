"""Job event bus: persist events to SQLite and push them to listeners.

Delivery is fire-and-forget. A listener that raises is logged and
skipped; it never affects the job that emitted the event.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

EVENT_JOB_STARTED = "job_started"
EVENT_JOB_PROGRESS = "job_progress"
EVENT_JOB_CONTENT = "job_content"
EVENT_FILE_CHANGE = "file_change"
EVENT_TASK_LIST_CREATED = "task_list_created"
EVENT_TASK_UPDATED = "task_updated"
EVENT_JOB_ESCALATED = "job_escalated"
EVENT_JOB_COMPLETED = "job_completed"
EVENT_JOB_FAILED = "job_failed"
EVENT_JOB_CANCELLED = "job_cancelled"

ALL_EVENTS = (
    EVENT_JOB_STARTED,
    EVENT_JOB_PROGRESS,
    EVENT_JOB_CONTENT,
    EVENT_FILE_CHANGE,
    EVENT_TASK_LIST_CREATED,
    EVENT_TASK_UPDATED,
    EVENT_JOB_ESCALATED,
    EVENT_JOB_COMPLETED,
    EVENT_JOB_FAILED,
    EVENT_JOB_CANCELLED,
)


class EventCollector:
    """Central event bus: writes to SQLite and notifies listeners."""

    def __init__(self, store, user_id: str | None = None):
        self._store = store
        self._user_id = user_id
        self._listeners: list[Callable] = []

    def emit(
        self,
        event_type: str,
        summary: str,
        *,
        job_id: str | None = None,
        user_id: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        """Emit an event: persist to SQLite and notify all listeners."""
        if event_type not in ALL_EVENTS:
            raise ValueError(f"Unknown event type: {event_type}")
        user_id = user_id or self._user_id
        event_id = self._store.record_event(
            event_type=event_type,
            summary=summary,
            job_id=job_id,
            user_id=user_id,
            metadata=metadata,
        )

        event_data = {
            "id": event_id,
            "timestamp": time.time(),
            "event_type": event_type,
            "summary": summary,
            "job_id": job_id,
            "user_id": user_id,
            "metadata": metadata or {},
        }

        for listener in list(self._listeners):
            try:
                listener(event_data)
            except Exception as e:
                logger.warning(f"Event listener error: {e}")

        return event_id

    def add_listener(self, callback: Callable[[dict], Any]) -> None:
        """Register a listener for all events."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        """Remove a registered listener."""
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass
