"""Tests for jobpilot.events: EventCollector persistence and listeners."""

import pytest

from jobpilot.events import ALL_EVENTS, EVENT_JOB_PROGRESS, EVENT_JOB_STARTED, EventCollector


class TestEventCollector:
    """Test emit, persistence and listener isolation."""

    def test_emit_persists(self, store):
        collector = EventCollector(store, user_id="alice")
        event_id = collector.emit(EVENT_JOB_STARTED, "started", job_id="job-1", metadata={"budget": 40})
        [event] = store.get_events(job_id="job-1")
        assert event["id"] == event_id
        assert event["user_id"] == "alice"
        assert event["metadata"] == {"budget": 40}

    def test_unknown_type_rejected(self, events):
        with pytest.raises(ValueError):
            events.emit("job_exploded", "no")

    def test_listeners_notified(self, events):
        seen = []
        events.add_listener(seen.append)
        events.emit(EVENT_JOB_PROGRESS, "Iteration 1/40", job_id="job-1", metadata={"message": "x"})
        assert seen[0]["event_type"] == EVENT_JOB_PROGRESS
        assert seen[0]["metadata"] == {"message": "x"}

    def test_listener_failure_does_not_propagate(self, events, store):
        def broken(event):
            raise RuntimeError("listener bug")

        seen = []
        events.add_listener(broken)
        events.add_listener(seen.append)
        events.emit(EVENT_JOB_STARTED, "started", job_id="job-1")
        assert len(seen) == 1
        assert len(store.get_events(job_id="job-1")) == 1

    def test_remove_listener(self, events):
        seen = []
        events.add_listener(seen.append)
        events.remove_listener(seen.append)
        events.remove_listener(seen.append)
        events.emit(EVENT_JOB_STARTED, "started")
        assert seen == []

    def test_all_ten_event_types(self):
        assert len(ALL_EVENTS) == 10
