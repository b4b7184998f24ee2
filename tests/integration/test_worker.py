"""
Integration tests for worker functionality.
"""

import asyncio

import pytest

from jobstream.constants import (
    ERROR_EXECUTION_TIMEOUT,
    ERROR_UNSUPPORTED_TYPE,
    JobPriority,
    JobStatus,
    WorkerState,
)
from jobstream.dispatcher import Dispatcher
from jobstream.types.job import JobContext, JobResult
from jobstream.types.queue import QueueConfig
from jobstream.worker import HandlerRegistry, RateLimiter, Worker, WorkerPool


@pytest.fixture
def registry() -> HandlerRegistry:
    """A private registry with a few handlers for these tests."""
    registry = HandlerRegistry()

    @registry.register("email")
    async def handle_email(context: JobContext) -> JobResult:
        return JobResult(success=True, output={"sent_to": context.payload["to"]})

    @registry.register("boom")
    async def handle_boom(context: JobContext) -> JobResult:
        raise RuntimeError("handler exploded")

    @registry.register("refuse")
    async def handle_refuse(context: JobContext) -> JobResult:
        return JobResult(success=False, error="not today")

    @registry.register("slow")
    async def handle_slow(context: JobContext) -> JobResult:
        await asyncio.sleep(5)
        return JobResult(success=True)

    return registry


def make_worker(
    dispatcher: Dispatcher, registry: HandlerRegistry, queue_name: str = "q1", **kwargs
) -> Worker:
    return Worker(dispatcher, queue_name, registry=registry, poll_interval=0.01, **kwargs)


class TestWorkerPoll:
    """Tests for single poll/execute cycles."""

    async def test_single_poll_completes_job(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test one poll claims, executes and completes a job."""
        job = await dispatcher.add_job(
            "q1", "email", {"to": "a@b.com"}, {"priority": JobPriority.HIGH}
        )
        worker = make_worker(dispatcher, registry)

        assert await worker.run_once() is True

        done = await dispatcher.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.result == {"sent_to": "a@b.com"}
        assert done.attempts == 0

    async def test_idle_poll(self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry):
        worker = make_worker(dispatcher, registry)

        assert await worker.run_once() is False

    async def test_missing_queue_idles(self, dispatcher: Dispatcher, registry: HandlerRegistry):
        worker = make_worker(dispatcher, registry, queue_name="missing")

        assert await worker.run_once() is False

    async def test_fail_fail_succeed(
        self, dispatcher: Dispatcher, queue: QueueConfig, make_due
    ):
        """Test a handler that fails twice then succeeds ends COMPLETED with attempts=2."""
        registry = HandlerRegistry()
        calls = []

        @registry.register("flaky")
        async def handle_flaky(context: JobContext) -> JobResult:
            calls.append(context.attempt)
            if context.attempt < 3:
                raise RuntimeError(f"attempt {context.attempt} failed")
            return JobResult(success=True, output={"ok": True})

        job = await dispatcher.add_job("q1", "flaky", {})
        worker = make_worker(dispatcher, registry)

        for _ in range(3):
            assert await worker.run_once() is True
            current = await dispatcher.get_job(job.id)
            if current.status == JobStatus.DELAYED:
                await make_due(job.id)

        final = await dispatcher.get_job(job.id)
        assert calls == [1, 2, 3]
        assert final.status == JobStatus.COMPLETED
        assert final.attempts == 2

    async def test_handler_exception_records_trace(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test an exception becomes a failure report with its traceback."""
        job = await dispatcher.add_job("q1", "boom", {})
        worker = make_worker(dispatcher, registry)

        await worker.run_once()

        failed = await dispatcher.get_job(job.id)
        assert failed.status == JobStatus.DELAYED
        assert failed.attempts == 1
        assert failed.error == "handler exploded"
        assert "RuntimeError" in failed.stack_trace

    async def test_non_dict_output_completes(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test a handler result that is not a dict is stored as the job result."""

        @registry.register("render")
        async def handle_render(context: JobContext) -> JobResult:
            return JobResult(success=True, output="rendered.pdf")

        job = await dispatcher.add_job("q1", "render")
        worker = make_worker(dispatcher, registry)

        await worker.run_once()

        done = await dispatcher.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.result == "rendered.pdf"
        assert done.data is None

    async def test_handler_timeout_error_keeps_message(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test a TimeoutError raised by the handler is not reported as an execution timeout."""

        @registry.register("upstream")
        async def handle_upstream(context: JobContext) -> JobResult:
            raise TimeoutError("upstream socket read timed out")

        job = await dispatcher.add_job("q1", "upstream", {}, {"attempts": 1})
        worker = make_worker(dispatcher, registry)

        await worker.run_once()

        failed = await dispatcher.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "upstream socket read timed out"
        assert "TimeoutError" in failed.stack_trace

    async def test_unsuccessful_result_is_failure(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        job = await dispatcher.add_job("q1", "refuse", {}, {"attempts": 1})
        worker = make_worker(dispatcher, registry)

        await worker.run_once()

        failed = await dispatcher.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "not today"

    async def test_unsupported_type(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test a job with no handler fails with the unsupported type error."""
        job = await dispatcher.add_job("q1", "unknown_type", {}, {"attempts": 1})
        worker = make_worker(dispatcher, registry)

        await worker.run_once()

        failed = await dispatcher.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == f"{ERROR_UNSUPPORTED_TYPE}: unknown_type"

    async def test_execution_timeout(
        self, dispatcher: Dispatcher, registry: HandlerRegistry
    ):
        """Test a handler over the queue's timeout fails with the timeout error."""
        await dispatcher.create_queue("tight", {"timeout": 0.05})
        job = await dispatcher.add_job("tight", "slow", {}, {"attempts": 1})
        worker = make_worker(dispatcher, registry, queue_name="tight")

        await worker.run_once()

        failed = await dispatcher.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == ERROR_EXECUTION_TIMEOUT

    async def test_progress_reporting(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test handler progress reports are stored while the job runs."""
        seen = []

        @registry.register("steps")
        async def handle_steps(context: JobContext) -> JobResult:
            await context.report_progress(40)
            seen.append((await dispatcher.get_job(context.job_id)).progress)
            await context.report_progress(150)
            seen.append((await dispatcher.get_job(context.job_id)).progress)
            return JobResult(success=True)

        job = await dispatcher.add_job("q1", "steps", {})
        worker = make_worker(dispatcher, registry)

        await worker.run_once()

        assert seen == [40, 100]
        assert (await dispatcher.get_job(job.id)).progress == 100


class TestWorkerGating:
    """Tests for pause, concurrency and rate limiting."""

    async def test_slot_above_concurrency_idles(
        self, dispatcher: Dispatcher, registry: HandlerRegistry
    ):
        """Test slot i does nothing while i >= concurrency."""
        await dispatcher.create_queue("narrow", {"concurrency": 1})
        job = await dispatcher.add_job("narrow", "email", {"to": "x"})

        assert await make_worker(dispatcher, registry, queue_name="narrow", slot=1).run_once() is False
        assert (await dispatcher.get_job(job.id)).status == JobStatus.PENDING

        assert await make_worker(dispatcher, registry, queue_name="narrow", slot=0).run_once() is True

    async def test_paused_queue_not_polled(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test pausing a queue stops claims for existing jobs."""
        job = await dispatcher.add_job("q1", "email", {"to": "x"})
        await dispatcher.pause_queue("q1")
        worker = make_worker(dispatcher, registry)

        assert await worker.run_once() is False
        assert (await dispatcher.get_job(job.id)).status == JobStatus.PENDING

        await dispatcher.resume_queue("q1")
        assert await worker.run_once() is True

    async def test_rate_limit(self, dispatcher: Dispatcher, registry: HandlerRegistry):
        """Test claims stop once the queue's rate limit is used up."""
        await dispatcher.create_queue(
            "limited", {"rate_limit": {"max": 2, "duration": 60}}
        )
        for _ in range(3):
            await dispatcher.add_job("limited", "email", {"to": "x"})
        worker = make_worker(dispatcher, registry, queue_name="limited", rate_limiter=RateLimiter())

        results = [await worker.run_once() for _ in range(3)]

        assert results == [True, True, False]
        metrics = await dispatcher.get_queue_metrics("limited")
        assert metrics.completed == 2
        assert metrics.waiting == 1

    async def test_idle_poll_does_not_spend_tokens(
        self, dispatcher: Dispatcher, registry: HandlerRegistry
    ):
        """Test polling an empty queue leaves the rate limit untouched."""
        await dispatcher.create_queue(
            "limited", {"rate_limit": {"max": 1, "duration": 60}}
        )
        worker = make_worker(dispatcher, registry, queue_name="limited", rate_limiter=RateLimiter())

        assert await worker.run_once() is False
        await dispatcher.add_job("limited", "email", {"to": "x"})
        assert await worker.run_once() is True


class TestWorkerStatus:
    """Tests for the per-loop status record."""

    async def test_status_before_any_poll(self, dispatcher: Dispatcher, registry: HandlerRegistry):
        status = make_worker(dispatcher, registry, slot=1).metrics()

        assert status.queue_name == "q1"
        assert status.slot == 1
        assert status.status == WorkerState.IDLE
        assert status.jobs_processed == 0
        assert status.last_heartbeat is None

    async def test_active_while_executing(self, dispatcher: Dispatcher, queue: QueueConfig):
        """Test the loop reports the job it is running, then goes idle."""
        registry = HandlerRegistry()
        during = []

        @registry.register("peek")
        async def handle_peek(context: JobContext) -> JobResult:
            during.append(worker.metrics())
            return JobResult(success=True)

        job = await dispatcher.add_job("q1", "peek", {})
        worker = make_worker(dispatcher, registry)

        await worker.run_once()

        assert during[0].status == WorkerState.ACTIVE
        assert during[0].current_job_id == job.id
        after = worker.metrics()
        assert after.status == WorkerState.IDLE
        assert after.current_job_id is None
        assert after.last_job_at is not None
        assert after.last_heartbeat is not None

    async def test_counts_outcomes(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test completed and failed executions are counted separately."""
        await dispatcher.add_job("q1", "email", {"to": "x"})
        await dispatcher.add_job("q1", "boom", {})
        worker = make_worker(dispatcher, registry)

        await worker.run_once()
        await worker.run_once()

        status = worker.metrics()
        assert status.jobs_processed == 1
        assert status.jobs_failed == 1
        assert status.average_processing_time_ms >= 0

    async def test_idle_poll_updates_heartbeat_only(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        worker = make_worker(dispatcher, registry)

        await worker.run_once()

        status = worker.metrics()
        assert status.last_heartbeat is not None
        assert status.last_job_at is None
        assert status.jobs_processed == status.jobs_failed == 0


class TestWorkerPool:
    """Tests for the pool of polling loops."""

    async def test_pool_processes_jobs(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test a running pool drains the queue and stops cleanly."""
        jobs = [await dispatcher.add_job("q1", "email", {"to": str(i)}) for i in range(4)]
        pool = WorkerPool(dispatcher, registry=registry, poll_interval=0.01)

        await pool.start()
        assert pool.size == queue.concurrency

        for _ in range(200):
            metrics = await dispatcher.get_queue_metrics("q1")
            if metrics.completed == len(jobs):
                break
            await asyncio.sleep(0.01)

        await pool.stop()

        assert (await dispatcher.get_queue_metrics("q1")).completed == len(jobs)
        assert pool.size == 0

    async def test_sync_spawns_new_queues(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test loops are added for queues created after start."""
        pool = WorkerPool(dispatcher, registry=registry, poll_interval=0.01)
        await pool.start()
        try:
            await dispatcher.create_queue("later", {"concurrency": 3})

            assert await pool.sync_queues() == 3
            assert pool.size == queue.concurrency + 3
            assert await pool.sync_queues() == 0
        finally:
            await pool.stop()

    async def test_stop_waits_for_job_in_flight(
        self, dispatcher: Dispatcher, queue: QueueConfig
    ):
        """Test stopping lets a running job finish and report."""
        registry = HandlerRegistry()
        started = asyncio.Event()

        @registry.register("wait")
        async def handle_wait(context: JobContext) -> JobResult:
            started.set()
            await asyncio.sleep(0.1)
            return JobResult(success=True)

        job = await dispatcher.add_job("q1", "wait", {})
        pool = WorkerPool(dispatcher, registry=registry, poll_interval=0.01)
        await pool.start()

        await asyncio.wait_for(started.wait(), timeout=5)
        await pool.stop()

        assert (await dispatcher.get_job(job.id)).status == JobStatus.COMPLETED

    async def test_list_workers(
        self, dispatcher: Dispatcher, queue: QueueConfig, registry: HandlerRegistry
    ):
        """Test the pool exposes one status record per started loop."""
        await dispatcher.create_queue("other", {"concurrency": 1})
        pool = WorkerPool(dispatcher, registry=registry, poll_interval=0.01)
        await pool.start()
        try:
            workers = pool.list_workers()
            assert [(w.queue_name, w.slot) for w in workers] == [
                ("other", 0),
                ("q1", 0),
                ("q1", 1),
            ]
            assert [w.slot for w in pool.list_workers("q1")] == [0, 1]
        finally:
            await pool.stop()

        assert pool.list_workers() == []
