"""
Unit tests for job handlers.
"""

from uuid import uuid4

import pytest

from jobstream.types.job import JobContext, JobResult
from jobstream.worker.handlers import (
    HandlerRegistry,
    get_handler,
    handle_echo,
    handle_sleep,
    list_handlers,
)


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    @pytest.fixture
    def registry(self) -> HandlerRegistry:
        return HandlerRegistry()

    def test_register_decorator(self, registry: HandlerRegistry):
        """Test registering a handler with the decorator."""

        @registry.register("send_email")
        async def handle_send_email(context: JobContext) -> JobResult:
            return JobResult(success=True)

        assert registry.get("send_email") is handle_send_email
        assert "send_email" in registry
        assert registry.list_types() == ["send_email"]

    def test_add_replaces_existing(self, registry: HandlerRegistry):
        """Test the last registration for a type wins."""

        async def first(context: JobContext) -> JobResult:
            return JobResult(success=True)

        async def second(context: JobContext) -> JobResult:
            return JobResult(success=True)

        registry.add("resize", first)
        registry.add("resize", second)

        assert registry.get("resize") is second

    def test_add_rejects_empty_type(self, registry: HandlerRegistry):
        async def handler(context: JobContext) -> JobResult:
            return JobResult(success=True)

        with pytest.raises(ValueError):
            registry.add("", handler)

    def test_get_handler_not_exists(self, registry: HandlerRegistry):
        """Test getting a non-existent handler."""
        assert registry.get("nonexistent") is None


class TestBuiltinHandlers:
    """Tests for the handlers on the default registry."""

    @pytest.fixture
    def job_context(self) -> JobContext:
        """Create a test job context."""
        return JobContext(
            job_id=uuid4(),
            queue_name="q1",
            job_type="echo",
            attempts=0,
            max_attempts=3,
            payload={"message": "test"},
            metadata={},
        )

    def test_list_handlers(self):
        """Test listing registered handlers."""
        handlers = list_handlers()

        assert "echo" in handlers
        assert "sleep" in handlers

    def test_get_handler_exists(self):
        """Test getting an existing handler."""
        assert get_handler("echo") is handle_echo

    async def test_echo_handler(self, job_context: JobContext):
        """Test the echo handler."""
        result = await handle_echo(job_context)

        assert result.success is True
        assert result.output == {"echo": {"message": "test"}}

    async def test_sleep_handler_reports_progress(self, job_context: JobContext):
        """Test the sleep handler reports progress at each step."""
        reported: list[int] = []

        async def reporter(progress: int) -> None:
            reported.append(progress)

        job_context.payload = {"duration_seconds": 0.03, "steps": 3}
        job_context.progress_reporter = reporter

        result = await handle_sleep(job_context)

        assert result.success is True
        assert result.output == {"slept_for": 0.03}
        assert reported == [33, 66, 100]


class TestJobContext:
    """Tests for JobContext attempt bookkeeping."""

    def test_first_attempt(self):
        context = JobContext(
            job_id=uuid4(),
            queue_name="q1",
            job_type="echo",
            attempts=0,
            max_attempts=3,
            payload={},
            metadata={},
        )

        assert context.attempt == 1
        assert context.is_last_attempt is False
        assert context.remaining_attempts == 2

    def test_last_attempt(self):
        context = JobContext(
            job_id=uuid4(),
            queue_name="q1",
            job_type="echo",
            attempts=2,
            max_attempts=3,
            payload={},
            metadata={},
        )

        assert context.is_last_attempt is True
        assert context.remaining_attempts == 0

    async def test_report_progress_without_reporter(self):
        """Test reporting progress is a no-op when nothing listens."""
        context = JobContext(
            job_id=uuid4(),
            queue_name="q1",
            job_type="echo",
            attempts=0,
            max_attempts=1,
            payload={},
            metadata={},
        )

        await context.report_progress(50)
