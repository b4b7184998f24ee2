"""
Worker process for executing jobs.

Each active queue gets `concurrency` independent polling loops. A loop
claims one job at a time through the dispatcher, runs the handler for the
job's type under the queue's execution timeout, and reports the outcome
back so the dispatcher can complete the job or schedule its retry.
"""

import asyncio
import logging
import os
import signal
import time
import traceback
from datetime import datetime
from functools import partial
from typing import Any
from uuid import UUID

from prometheus_client import start_http_server

from jobstream.clock import utcnow
from jobstream.config import get_settings
from jobstream.constants import (
    ERROR_EXECUTION_TIMEOUT,
    ERROR_UNSUPPORTED_TYPE,
    SPAN_EXECUTE_JOB,
    WorkerState,
)
from jobstream.db import close_db, get_engine, init_db
from jobstream.db.models import Job
from jobstream.dispatcher import Dispatcher
from jobstream.exceptions import (
    ExecutionError,
    JobQueueError,
    JobTimeoutError,
    NotFoundError,
    PersistenceError,
    UnsupportedJobTypeError,
)
from jobstream.observability.logging import job_log_context, setup_logging
from jobstream.observability.tracing import (
    get_tracer,
    instrument_sqlalchemy,
    set_span_attributes,
    setup_tracing,
)
from jobstream.reaper.main import Reaper
from jobstream.types.job import JobContext, JobResult
from jobstream.types.queue import QueueConfig
from jobstream.types.worker import WorkerMetrics
from jobstream.worker.handlers import HandlerRegistry, default_registry
from jobstream.worker.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class Worker:
    """
    One polling loop bound to a (queue, slot) pair.

    Features:
    - Re-reads the queue configuration every tick, so pause, resume and
      concurrency changes apply within one poll interval
    - Slot i idles while i >= the queue's concurrency
    - Per-queue token bucket shared with the other loops of the queue
    - In-memory status record (idle or active, counters, heartbeat)
    - Stops between ticks once the stop event is set; a job in flight is
      never interrupted
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        queue_name: str,
        slot: int = 0,
        registry: HandlerRegistry | None = None,
        rate_limiter: RateLimiter | None = None,
        poll_interval: float | None = None,
        stop_event: asyncio.Event | None = None,
    ):
        """
        Initialize the worker.

        Args:
            dispatcher: The dispatcher to claim from and report to.
            queue_name: Queue this loop polls.
            slot: Index of this loop among the queue's loops.
            registry: Handlers by job type. Defaults to the default registry.
            rate_limiter: Limiter shared by the loops of this process.
            poll_interval: Seconds between polls when idle.
            stop_event: Cancellation signal, usually shared by a pool.
        """
        settings = get_settings()

        self.dispatcher = dispatcher
        self.queue_name = queue_name
        self.slot = slot
        self.registry = registry or default_registry
        self.rate_limiter = rate_limiter or RateLimiter()
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        )
        self.worker_id = f"{os.uname().nodename}-{os.getpid()}-{queue_name}-{slot}"
        self._stop_event = stop_event or asyncio.Event()

        self._state = WorkerState.IDLE
        self._current_job_id: UUID | None = None
        self._jobs_processed = 0
        self._jobs_failed = 0
        self._total_processing_ms = 0.0
        self._last_job_at: datetime | None = None
        self._last_heartbeat: datetime | None = None

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def metrics(self) -> WorkerMetrics:
        """Snapshot of this loop's status and execution counters."""
        executed = self._jobs_processed + self._jobs_failed
        return WorkerMetrics(
            worker_id=self.worker_id,
            queue_name=self.queue_name,
            slot=self.slot,
            status=self._state,
            current_job_id=self._current_job_id,
            jobs_processed=self._jobs_processed,
            jobs_failed=self._jobs_failed,
            average_processing_time_ms=self._total_processing_ms / executed if executed else 0.0,
            last_job_at=self._last_job_at,
            last_heartbeat=self._last_heartbeat,
        )

    async def run(self) -> None:
        """Poll until the stop event is set."""
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "queue": self.queue_name, "slot": self.slot},
        )

        while not self._stop_event.is_set():
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                processed = False

            # Poll again right away after a job, otherwise wait
            if not processed:
                await self._wait(self.poll_interval)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    def stop(self) -> None:
        self._stop_event.set()

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def run_once(self) -> bool:
        """
        Perform one poll/execute cycle.

        Returns:
            True if a job was claimed and executed.
        """
        self._last_heartbeat = utcnow()
        try:
            config = await self.dispatcher.refresh_queue(self.queue_name)
        except NotFoundError:
            return False
        except PersistenceError as e:
            logger.warning(
                "Could not read queue configuration, retrying next tick",
                extra={"worker_id": self.worker_id, "error": str(e)},
            )
            return False

        if not config.is_active or self.slot >= config.concurrency:
            return False

        if not self.rate_limiter.acquire(self.queue_name, config.rate_limit):
            logger.debug(
                "Queue rate limited",
                extra={
                    "queue": self.queue_name,
                    "wait_time": self.rate_limiter.wait_time(self.queue_name),
                },
            )
            return False

        try:
            job = await self.dispatcher.get_next_job(self.queue_name)
        except PersistenceError as e:
            self.rate_limiter.release(self.queue_name)
            logger.warning(
                "Poll failed, retrying next tick",
                extra={"worker_id": self.worker_id, "error": str(e)},
            )
            return False

        if job is None:
            self.rate_limiter.release(self.queue_name)
            return False

        await self._execute_job(job, config)
        return True

    async def _report_progress(self, job_id: UUID, progress: int) -> None:
        try:
            await self.dispatcher.update_progress(job_id, progress)
        except JobQueueError as e:
            logger.warning(
                "Progress update rejected",
                extra={"job_id": str(job_id), "error": str(e)},
            )

    async def _execute_job(self, job: Job, config: QueueConfig) -> None:
        """
        Execute a claimed job and report the outcome.

        Handler failures, timeouts and unknown job types become a failure
        report; none of them escape this method.
        """
        start_time = time.monotonic()
        self._state = WorkerState.ACTIVE
        self._current_job_id = job.id
        succeeded = False

        context = JobContext(
            job_id=job.id,
            queue_name=job.queue_name,
            job_type=job.type,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            payload=job.data,
            metadata=job.job_metadata,
            claimed_at=job.processed_at,
            progress_reporter=partial(self._report_progress, job.id),
        )

        try:
            with job_log_context(job.id, job.queue_name, context.attempt):
                logger.info(
                    "Executing job",
                    extra={"job_id": str(job.id), "job_type": job.type, "attempt": context.attempt},
                )

                try:
                    with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                        set_span_attributes(
                            span,
                            job_id=job.id,
                            queue=job.queue_name,
                            job_type=job.type,
                            attempt=context.attempt,
                        )
                        output = await self._run_handler(context, config.timeout)
                except ExecutionError as e:
                    logger.warning(
                        "Job failed",
                        extra={
                            "job_id": str(job.id),
                            "error": str(e),
                            "attempt": context.attempt,
                            "duration": f"{time.monotonic() - start_time:.2f}s",
                        },
                    )
                    await self._report(self.dispatcher.fail_job(job.id, str(e), e.trace), job.id)
                else:
                    succeeded = True
                    logger.info(
                        "Job executed successfully",
                        extra={
                            "job_id": str(job.id),
                            "duration": f"{time.monotonic() - start_time:.2f}s",
                        },
                    )
                    await self._report(self.dispatcher.complete_job(job.id, output), job.id)
        finally:
            self._record_execution(succeeded, (time.monotonic() - start_time) * 1000)

    def _record_execution(self, succeeded: bool, elapsed_ms: float) -> None:
        if succeeded:
            self._jobs_processed += 1
        else:
            self._jobs_failed += 1
        self._total_processing_ms += elapsed_ms
        self._last_job_at = utcnow()
        self._state = WorkerState.IDLE
        self._current_job_id = None

    async def _run_handler(self, context: JobContext, timeout: float) -> Any:
        """
        Run the handler for the job's type.

        Returns:
            The handler's output on success.

        Raises:
            UnsupportedJobTypeError: No handler registered for the type.
            JobTimeoutError: The handler exceeded `timeout` seconds.
            ExecutionError: The handler raised or reported failure.
        """
        handler = self.registry.get(context.job_type)
        if handler is None:
            raise UnsupportedJobTypeError(f"{ERROR_UNSUPPORTED_TYPE}: {context.job_type}")

        try:
            async with asyncio.timeout(timeout) as deadline:
                result = await handler(context)
        except ExecutionError:
            raise
        except TimeoutError as e:
            # Only our own deadline counts as an execution timeout
            if deadline.expired():
                raise JobTimeoutError(ERROR_EXECUTION_TIMEOUT) from e
            raise ExecutionError(
                str(e) or type(e).__name__,
                trace=traceback.format_exc(),
            ) from e
        except Exception as e:
            raise ExecutionError(
                str(e) or type(e).__name__,
                trace=traceback.format_exc(),
            ) from e

        if not isinstance(result, JobResult):
            raise ExecutionError(
                f"Handler returned {type(result).__name__}, expected JobResult"
            )
        if not result.success:
            raise ExecutionError(result.error or "Handler reported failure")
        return result.output

    async def _report(self, outcome: Any, job_id: UUID) -> None:
        """Await an outcome report; a rejected report is logged, not raised."""
        try:
            await outcome
        except JobQueueError:
            logger.exception(
                "Failed to report job outcome",
                extra={"job_id": str(job_id), "worker_id": self.worker_id},
            )


class WorkerPool:
    """
    The polling loops of one process, `concurrency` per active queue.

    All loops share one stop event and one rate limiter.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        registry: HandlerRegistry | None = None,
        poll_interval: float | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        self.dispatcher = dispatcher
        self.registry = registry or default_registry
        self.poll_interval = poll_interval
        self.rate_limiter = rate_limiter or RateLimiter()
        self._stop_event = asyncio.Event()
        self._tasks: dict[tuple[str, int], asyncio.Task] = {}
        self._workers: dict[tuple[str, int], Worker] = {}

    @property
    def size(self) -> int:
        """Number of loops currently running."""
        return sum(1 for task in self._tasks.values() if not task.done())

    async def start(self) -> None:
        """Start loops for every active queue."""
        self._stop_event.clear()
        spawned = await self.sync_queues()
        logger.info(f"Worker pool started with {spawned} loops")

    async def sync_queues(self) -> int:
        """
        Spawn loops for newly active queues and raised concurrency.

        Loops above a lowered concurrency keep running but idle.

        Returns:
            Number of loops spawned.
        """
        if self._stop_event.is_set():
            return 0

        spawned = 0
        for config in await self.dispatcher.list_queues(active=True):
            for slot in range(config.concurrency):
                key = (config.name, slot)
                task = self._tasks.get(key)
                if task is not None and not task.done():
                    continue
                worker = Worker(
                    self.dispatcher,
                    config.name,
                    slot=slot,
                    registry=self.registry,
                    rate_limiter=self.rate_limiter,
                    poll_interval=self.poll_interval,
                    stop_event=self._stop_event,
                )
                self._workers[key] = worker
                self._tasks[key] = asyncio.create_task(
                    worker.run(), name=f"worker-{config.name}-{slot}"
                )
                logger.info("Worker registered", extra={"worker_id": worker.worker_id})
                spawned += 1
        return spawned

    def list_workers(self, queue_name: str | None = None) -> list[WorkerMetrics]:
        """
        Status of every loop started by this pool, ordered by queue and slot.

        Args:
            queue_name: Only loops of this queue.
        """
        return [
            self._workers[key].metrics()
            for key in sorted(self._workers)
            if queue_name is None or key[0] == queue_name
        ]

    async def stop(self) -> None:
        """Signal every loop to stop and wait for in-flight jobs to finish."""
        self._stop_event.set()
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            logger.info(f"Waiting for {len(tasks)} worker loops to finish")
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._workers.clear()
        logger.info("Worker pool stopped")


async def run_async() -> None:
    """Run the worker pool and the reaper until SIGTERM/SIGINT."""
    settings = get_settings()
    setup_logging()
    setup_tracing()

    session_factory = await init_db()
    instrument_sqlalchemy(get_engine())
    if settings.prometheus_port:
        start_http_server(settings.prometheus_port)
        logger.info(f"Metrics exposed on port {settings.prometheus_port}")

    dispatcher = Dispatcher(session_factory)
    await dispatcher.initialize()

    pool = WorkerPool(dispatcher)
    reaper = Reaper(dispatcher)
    stop_event = asyncio.Event()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    reaper_task = asyncio.create_task(reaper.start(), name="reaper")
    try:
        await pool.start()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=settings.worker_queue_sync_interval_seconds
                )
            except TimeoutError:
                try:
                    await pool.sync_queues()
                except PersistenceError:
                    logger.exception("Queue sync failed")
    finally:
        await pool.stop()
        await reaper.stop()
        await reaper_task
        await dispatcher.close()
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
