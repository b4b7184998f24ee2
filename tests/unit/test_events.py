"""
Unit tests for the event bus and event factories.
"""

from types import SimpleNamespace
from uuid import uuid4

import pytest

from jobstream.clock import utcnow
from jobstream.constants import JobEventType, JobPriority, JobStatus
from jobstream.dispatcher.events import EventBus
from jobstream.types.events import JobEvent


def make_job(**overrides):
    """Build a job-like object carrying the attributes events read."""
    fields = {
        "id": uuid4(),
        "queue_name": "q1",
        "type": "email",
        "status": JobStatus.PENDING,
        "priority": JobPriority.NORMAL,
        "attempts": 0,
        "max_attempts": 3,
        "next_retry_at": None,
        "processed_at": None,
        "result": None,
        "error": None,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


class TestJobEvent:
    """Tests for JobEvent factories."""

    def test_job_added(self):
        """Test the added event carries priority and attempts."""
        job = make_job(priority=JobPriority.HIGH)
        event = JobEvent.job_added(job)

        assert event.event_type == JobEventType.JOB_ADDED
        assert event.job_id == job.id
        assert event.queue_name == "q1"
        assert event.job_type == "email"
        assert event.data["priority"] == JobPriority.HIGH
        assert event.data["max_attempts"] == 3

    def test_job_started_reports_attempt_number(self):
        """Test the started event reports the 1-based attempt."""
        job = make_job(status=JobStatus.PROCESSING, attempts=1, processed_at=utcnow())
        event = JobEvent.job_started(job)

        assert event.event_type == JobEventType.JOB_STARTED
        assert event.data["attempt"] == 2

    def test_job_retried_scheduled(self):
        """Test the retried event distinguishes scheduled retries."""
        job = make_job(status=JobStatus.DELAYED, attempts=1, error="boom", next_retry_at=utcnow())
        event = JobEvent.job_retried(job, scheduled=True)

        assert event.event_type == JobEventType.JOB_RETRIED
        assert event.status == JobStatus.DELAYED
        assert event.data["scheduled"] is True
        assert event.data["error"] == "boom"

    def test_job_failed(self):
        job = make_job(status=JobStatus.FAILED, attempts=3, error="boom")
        event = JobEvent.job_failed(job)

        assert event.event_type == JobEventType.JOB_FAILED
        assert event.data == {"error": "boom", "attempts": 3}


class TestEventBus:
    """Tests for EventBus."""

    @pytest.fixture
    def bus(self) -> EventBus:
        return EventBus()

    @pytest.fixture
    def event(self) -> JobEvent:
        return JobEvent.job_added(make_job())

    async def test_publish_to_sync_and_async_subscribers(self, bus: EventBus, event: JobEvent):
        """Test both callback kinds receive the event in subscription order."""
        received: list[str] = []

        def sync_callback(e: JobEvent) -> None:
            received.append(f"sync:{e.event_type}")

        async def async_callback(e: JobEvent) -> None:
            received.append(f"async:{e.event_type}")

        bus.subscribe(sync_callback)
        bus.subscribe(async_callback)
        await bus.publish(event)

        assert received == ["sync:job.added", "async:job.added"]

    async def test_filter_by_event_type(self, bus: EventBus, event: JobEvent):
        """Test typed subscriptions only see their type."""
        received: list[JobEvent] = []
        bus.subscribe(received.append, JobEventType.JOB_COMPLETED)

        await bus.publish(event)

        assert received == []

    async def test_unsubscribe(self, bus: EventBus, event: JobEvent):
        """Test an unsubscribed callback is no longer called."""
        received: list[JobEvent] = []
        unsubscribe = bus.subscribe(received.append)

        unsubscribe()
        unsubscribe()  # idempotent
        await bus.publish(event)

        assert received == []
        assert len(bus) == 0

    async def test_failing_subscriber_is_isolated(self, bus: EventBus, event: JobEvent):
        """Test a raising subscriber does not stop delivery to the next one."""
        received: list[JobEvent] = []

        def broken(e: JobEvent) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        await bus.publish(event)

        assert received == [event]

    async def test_no_replay_for_late_subscribers(self, bus: EventBus, event: JobEvent):
        """Test events published before subscribing are not delivered."""
        await bus.publish(event)

        received: list[JobEvent] = []
        bus.subscribe(received.append)

        assert received == []
