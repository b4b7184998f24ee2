"""
Dispatcher: every job lifecycle operation goes through here.

The store is the single serialization point. The dispatcher owns two pieces
of in-process state:
- a name -> QueueConfig cache, filled by initialize() and by reads, and
  replaced or dropped on every queue mutation made through this instance
- an EventBus, published to only after the state change has committed
"""

import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, NoReturn, TypeVar
from uuid import UUID

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobstream.clock import utcnow
from jobstream.config import Settings, get_settings
from jobstream.constants import SPAN_CLAIM_JOB, BackoffType, JobStatus
from jobstream.db.connection import session_scope
from jobstream.db.models import Job, Queue
from jobstream.db.queue_repository import QueueRepository
from jobstream.db.repository import JobRepository
from jobstream.dispatcher.backoff import next_retry_at
from jobstream.dispatcher.events import EventBus
from jobstream.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
    QueueNotFoundError,
    ValidationError,
)
from jobstream.observability.metrics import MetricsCollector, get_metrics
from jobstream.observability.tracing import get_tracer, set_span_attributes
from jobstream.types.events import JobEvent
from jobstream.types.job import JobOptions
from jobstream.types.queue import (
    BackoffPolicy,
    QueueConfig,
    QueueMetrics,
    QueueOptions,
    QueueStats,
    RateLimit,
)

logger = logging.getLogger(__name__)

OptionsT = TypeVar("OptionsT", bound=BaseModel)


def _parse_options(model: type[OptionsT], options: OptionsT | dict[str, Any] | None) -> OptionsT:
    if options is None:
        return model()
    if isinstance(options, model):
        return options
    try:
        return model.model_validate(options)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e}") from e


def _queue_columns(options: QueueOptions, fields: set[str]) -> dict[str, Any]:
    """Map the given QueueOptions fields onto Queue columns."""
    columns: dict[str, Any] = {}
    if "description" in fields:
        columns["description"] = options.description
    if "concurrency" in fields and options.concurrency is not None:
        columns["concurrency"] = options.concurrency
    if "rate_limit" in fields:
        rate_limit = options.rate_limit
        columns["rate_limit_max"] = rate_limit.max if rate_limit else None
        columns["rate_limit_duration_seconds"] = rate_limit.duration if rate_limit else None
    if "attempts" in fields and options.attempts is not None:
        columns["default_attempts"] = options.attempts
    if "backoff" in fields and options.backoff is not None:
        columns["backoff_type"] = options.backoff.type
        columns["backoff_delay_seconds"] = options.backoff.delay
        columns["backoff_multiplier"] = options.backoff.multiplier
    if "timeout" in fields and options.timeout is not None:
        columns["timeout_seconds"] = options.timeout
    return columns


class Dispatcher:
    """
    Mediates job creation, atomic claim, delayed promotion, retry
    scheduling, cancellation and removal against the job store and the
    queue registry.

    Store failures surface as PersistenceError; nothing is retried here.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        metrics: MetricsCollector | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            session_factory: Factory for units of work against the store.
            metrics: Metrics collector. Defaults to the process-wide one.
            settings: Settings providing queue defaults.
        """
        self._session_factory = session_factory
        self._metrics = metrics or get_metrics()
        self._settings = settings or get_settings()
        self._queues: dict[str, QueueConfig] = {}
        self._events = EventBus()

    @property
    def events(self) -> EventBus:
        """Lifecycle event channel. Best-effort, at-most-once delivery."""
        return self._events

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        try:
            async with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Store operation failed", extra={"error": str(e)})
            raise PersistenceError(str(e)) from e

    def _cache(self, queue: Queue) -> QueueConfig:
        config = QueueConfig.from_model(queue)
        self._queues[config.name] = config
        return config

    def _default_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            type=BackoffType(self._settings.queue_default_backoff_type),
            delay=self._settings.queue_default_backoff_delay_seconds,
            multiplier=self._settings.queue_default_backoff_multiplier,
        )

    def _default_rate_limit(self) -> RateLimit | None:
        settings = self._settings
        if settings.queue_default_rate_limit_max and settings.queue_default_rate_limit_duration_seconds:
            return RateLimit(
                max=settings.queue_default_rate_limit_max,
                duration=settings.queue_default_rate_limit_duration_seconds,
            )
        return None

    # =========================================================================
    # Queue registry
    # =========================================================================

    async def initialize(self) -> list[QueueConfig]:
        """
        Load existing active queues into the cache and create the configured
        default queues.

        Returns:
            The active queues after initialization.
        """
        async with self._session() as session:
            queues = await QueueRepository(session).list_queues(active=True)
            for queue in queues:
                self._cache(queue)

        for name in self._settings.default_queues:
            await self.create_queue(name)

        active = [config for config in self._queues.values() if config.is_active]
        logger.info(
            "Dispatcher initialized",
            extra={"queues": sorted(config.name for config in active)},
        )
        return active

    async def create_queue(
        self,
        name: str,
        options: QueueOptions | dict[str, Any] | None = None,
    ) -> QueueConfig:
        """
        Create a queue, or return the existing one with that name.

        Unset options take their defaults from settings.
        """
        opts = _parse_options(QueueOptions, options)
        if not name or not name.strip():
            raise ValidationError("Queue name must not be empty")

        settings = self._settings
        merged = QueueOptions(
            description=opts.description,
            concurrency=opts.concurrency or settings.queue_default_concurrency,
            rate_limit=(
                opts.rate_limit
                if "rate_limit" in opts.model_fields_set
                else self._default_rate_limit()
            ),
            attempts=opts.attempts or settings.queue_default_attempts,
            backoff=opts.backoff or self._default_backoff(),
            timeout=opts.timeout or settings.worker_job_timeout_seconds,
        )
        columns = _queue_columns(merged, set(QueueOptions.model_fields))

        try:
            async with self._session() as session:
                repo = QueueRepository(session)
                queue = await repo.get_by_name(name)
                if queue is None:
                    queue = await repo.create(name, is_active=True, **columns)
                return self._cache(queue)
        except PersistenceError as e:
            # Lost a creation race against another process
            if not isinstance(e.__cause__, IntegrityError):
                raise
            return await self.refresh_queue(name)

    async def get_queue(self, name: str) -> QueueConfig:
        """Get a queue's configuration, from the cache when present."""
        config = self._queues.get(name)
        if config is not None:
            return config
        return await self.refresh_queue(name)

    async def refresh_queue(self, name: str) -> QueueConfig:
        """
        Reload a queue's configuration from the store.

        Raises:
            QueueNotFoundError: The queue no longer exists. The cache entry
                is dropped.
        """
        async with self._session() as session:
            queue = await QueueRepository(session).get_by_name(name)
        if queue is None:
            self._queues.pop(name, None)
            raise QueueNotFoundError(name)
        return self._cache(queue)

    async def list_queues(self, active: bool | None = None) -> list[QueueConfig]:
        async with self._session() as session:
            queues = await QueueRepository(session).list_queues(active=active)
        return [self._cache(queue) for queue in queues]

    async def update_queue(
        self,
        name: str,
        options: QueueOptions | dict[str, Any],
    ) -> QueueConfig:
        """
        Update a queue's configuration.

        Only the fields explicitly given are changed. Passing rate_limit=None
        removes the limit.
        """
        opts = _parse_options(QueueOptions, options)
        columns = _queue_columns(opts, opts.model_fields_set)

        async with self._session() as session:
            repo = QueueRepository(session)
            if columns:
                queue = await repo.update(name, **columns)
            else:
                queue = await repo.get_by_name(name)
            if queue is None:
                self._queues.pop(name, None)
                raise QueueNotFoundError(name)
            return self._cache(queue)

    async def _set_active(self, name: str, active: bool) -> QueueConfig:
        async with self._session() as session:
            queue = await QueueRepository(session).update(name, is_active=active)
            if queue is None:
                self._queues.pop(name, None)
                raise QueueNotFoundError(name)
            config = self._cache(queue)

        logger.info("Queue paused" if not active else "Queue resumed", extra={"queue": name})
        return config

    async def pause_queue(self, name: str) -> QueueConfig:
        """Stop accepting new jobs and stop workers from polling. In-flight jobs finish."""
        return await self._set_active(name, False)

    async def resume_queue(self, name: str) -> QueueConfig:
        return await self._set_active(name, True)

    async def delete_queue(self, name: str) -> int:
        """
        Delete a queue and every job of it that is not PROCESSING.

        Returns:
            Number of jobs deleted with the queue.
        """
        async with self._session() as session:
            deleted = await QueueRepository(session).delete(name)
            if not deleted:
                self._queues.pop(name, None)
                raise QueueNotFoundError(name)
            removed = await JobRepository(session).delete_queue_jobs(name)

        self._queues.pop(name, None)
        logger.info("Queue deleted", extra={"queue": name, "jobs_deleted": removed})
        return removed

    async def get_queue_stats(self, name: str) -> QueueStats:
        """Aggregate counters over the finished jobs of a queue."""
        async with self._session() as session:
            queue = await QueueRepository(session).get_by_name(name)
        if queue is None:
            raise QueueNotFoundError(name)
        return QueueStats(
            total_jobs=queue.total_jobs,
            completed_jobs=queue.completed_jobs,
            failed_jobs=queue.failed_jobs,
            average_processing_time_ms=queue.average_processing_time_ms,
        )

    # =========================================================================
    # Job lifecycle
    # =========================================================================

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: Any = None,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> Job:
        """
        Add a job to a queue.

        Args:
            queue_name: Target queue. Must exist and be active.
            job_type: Selects the handler that will run the job.
            payload: Opaque JSON-serializable input.
            options: delay, priority, attempts, metadata, remove_on_*.

        Returns:
            The persisted Job (PENDING, or DELAYED when delay > 0).

        Raises:
            ValidationError: Unknown or inactive queue, or malformed options.
        """
        opts = _parse_options(JobOptions, options)
        if not job_type:
            raise ValidationError("Job type must not be empty")

        async with self._session() as session:
            queue = await QueueRepository(session).get_by_name(queue_name)
            if queue is None:
                self._queues.pop(queue_name, None)
                raise ValidationError(f"Queue '{queue_name}' does not exist")
            config = self._cache(queue)
            if not config.is_active:
                raise ValidationError(f"Queue '{queue_name}' is paused")

            job = await JobRepository(session).create_job(
                queue_name=queue_name,
                job_type=job_type,
                data=payload,
                priority=opts.priority,
                max_attempts=opts.attempts or config.attempts,
                delay_seconds=opts.delay,
                metadata=opts.metadata,
                remove_on_complete=opts.remove_on_complete,
                remove_on_fail=opts.remove_on_fail,
            )

        self._metrics.record_job_added(queue_name, job.priority.value)
        await self._events.publish(JobEvent.job_added(job))
        return job

    async def get_next_job(self, queue_name: str) -> Job | None:
        """
        Promote due DELAYED jobs of the queue, then claim one PENDING job.

        The claim picks the highest priority, then the oldest job, and is a
        single conditional update: with K concurrent callers and one
        claimable job, exactly one caller gets it and the others get None.

        Returns:
            The claimed Job, now PROCESSING, or None.
        """
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
            set_span_attributes(span, queue=queue_name)

            async with self._session() as session:
                repo = JobRepository(session)
                promoted = await repo.promote_delayed_jobs(queue_name)
                job = await repo.claim_next_job(queue_name)

            self._metrics.record_promoted(promoted)
            if job is None:
                return None

            set_span_attributes(span, job_id=job.id, attempt=job.attempts + 1)

        self._metrics.record_job_claimed(queue_name)
        await self._events.publish(JobEvent.job_started(job))
        return job

    async def _raise_transition_error(
        self, repo: JobRepository, job_id: UUID, operation: str
    ) -> NoReturn:
        job = await repo.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        raise InvalidTransitionError(job_id, job.status.value, operation)

    async def complete_job(self, job_id: UUID, result: Any = None) -> Job:
        """
        Record a successful execution: PROCESSING -> COMPLETED.

        Raises:
            JobNotFoundError: No such job.
            InvalidTransitionError: The job is not PROCESSING.
        """
        async with self._session() as session:
            repo = JobRepository(session)
            job = await repo.complete_job(job_id, result)
            if job is None:
                await self._raise_transition_error(repo, job_id, "complete")
            await QueueRepository(session).record_outcome(
                job.queue_name, succeeded=True, processing_time_ms=job.processing_time_ms
            )

        duration_ms = job.processing_time_ms
        self._metrics.record_job_finished(
            job.queue_name,
            JobStatus.COMPLETED,
            duration_ms / 1000 if duration_ms is not None else None,
        )
        await self._events.publish(JobEvent.job_completed(job))

        if job.remove_on_complete:
            await self._delete_finished(job)
        return job

    async def fail_job(self, job_id: UUID, error: str, trace: str | None = None) -> Job:
        """
        Record a failed execution and decide what happens next.

        The attempt counter is incremented. If attempts now reach
        max_attempts the job is FAILED (terminal); otherwise it is DELAYED
        until now + backoff(attempts) under the queue's backoff policy.

        Raises:
            JobNotFoundError: No such job.
            InvalidTransitionError: The job is not PROCESSING, or another
                caller changed it concurrently.
        """
        async with self._session() as session:
            repo = JobRepository(session)
            current = await repo.get_job(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            if current.status != JobStatus.PROCESSING:
                raise InvalidTransitionError(job_id, current.status.value, "fail")

            now = utcnow()
            attempts = current.attempts + 1
            terminal = attempts >= current.max_attempts

            if terminal:
                job = await repo.fail_job(
                    job_id, current.attempts, error, trace, failed_at=now
                )
            else:
                policy = await self._backoff_for(session, current.queue_name)
                job = await repo.schedule_retry(
                    job_id,
                    current.attempts,
                    retry_at=next_retry_at(policy, attempts, now),
                    error=error,
                    trace=trace,
                    failed_at=now,
                )
            if job is None:
                await self._raise_transition_error(repo, job_id, "fail")

            if terminal:
                await QueueRepository(session).record_outcome(
                    job.queue_name, succeeded=False, processing_time_ms=job.processing_time_ms
                )

        if terminal:
            duration_ms = job.processing_time_ms
            self._metrics.record_job_finished(
                job.queue_name,
                JobStatus.FAILED,
                duration_ms / 1000 if duration_ms is not None else None,
            )
            await self._events.publish(JobEvent.job_failed(job))
            if job.remove_on_fail:
                await self._delete_finished(job)
        else:
            self._metrics.record_retry_scheduled(job.queue_name)
            await self._events.publish(JobEvent.job_retried(job, scheduled=True))
        return job

    async def _backoff_for(self, session: AsyncSession, queue_name: str) -> BackoffPolicy:
        config = self._queues.get(queue_name)
        if config is None:
            queue = await QueueRepository(session).get_by_name(queue_name)
            if queue is None:
                return self._default_backoff()
            config = self._cache(queue)
        return config.backoff

    async def _delete_finished(self, job: Job) -> None:
        async with self._session() as session:
            await JobRepository(session).delete_job(job.id)

    async def retry_job(self, job_id: UUID, delay: float = 0.0) -> Job:
        """
        Manually retry a job: attempts reset to 0, error and trace cleared.

        Allowed from FAILED, CANCELLED, COMPLETED and DELAYED.

        Args:
            job_id: The job UUID.
            delay: Seconds before the job becomes claimable again.
        """
        if delay < 0:
            raise ValidationError("Retry delay must not be negative")
        retry_at = utcnow() + timedelta(seconds=delay) if delay > 0 else None

        async with self._session() as session:
            repo = JobRepository(session)
            job = await repo.reset_for_retry(job_id, retry_at)
            if job is None:
                await self._raise_transition_error(repo, job_id, "retry")

        await self._events.publish(JobEvent.job_retried(job, scheduled=False))
        return job

    async def bulk_retry(
        self,
        queue_name: str | None = None,
        job_type: str | None = None,
    ) -> int:
        """
        Manually retry every FAILED job matching the filters.

        Returns:
            Number of jobs moved back to PENDING.
        """
        retried: list[Job] = []
        async with self._session() as session:
            repo = JobRepository(session)
            job_ids = await repo.list_job_ids(JobStatus.FAILED, queue_name, job_type)
            for job_id in job_ids:
                job = await repo.reset_for_retry(job_id)
                if job is not None:
                    retried.append(job)

        for job in retried:
            await self._events.publish(JobEvent.job_retried(job, scheduled=False))

        logger.info(
            f"Bulk retried {len(retried)} jobs",
            extra={"queue": queue_name, "job_type": job_type},
        )
        return len(retried)

    async def cancel_job(self, job_id: UUID, remove: bool = False) -> Job:
        """
        Cancel a job that has not been claimed yet: PENDING/DELAYED -> CANCELLED.

        Loses deterministically against a concurrent claim.

        Args:
            job_id: The job UUID.
            remove: Delete the record once cancelled.

        Raises:
            JobNotFoundError: No such job.
            InvalidTransitionError: The job is PROCESSING or terminal.
        """
        async with self._session() as session:
            repo = JobRepository(session)
            job = await repo.cancel_job(job_id)
            if job is None:
                await self._raise_transition_error(repo, job_id, "cancel")
            if remove:
                await repo.delete_job(job_id)

        self._metrics.record_job_finished(job.queue_name, JobStatus.CANCELLED)
        await self._events.publish(JobEvent.job_cancelled(job))
        return job

    async def remove_job(self, job_id: UUID) -> None:
        """
        Delete a job record. Refused while the job is PROCESSING.

        Raises:
            JobNotFoundError: No such job.
            InvalidTransitionError: The job is PROCESSING.
        """
        async with self._session() as session:
            repo = JobRepository(session)
            if not await repo.delete_job(job_id):
                await self._raise_transition_error(repo, job_id, "remove")

    async def update_progress(self, job_id: UUID, progress: int) -> Job:
        """
        Record intermediate progress, clamped to 0..100.

        Observational only. Rejected unless the job is PROCESSING.
        """
        async with self._session() as session:
            repo = JobRepository(session)
            job = await repo.update_progress(job_id, progress)
            if job is None:
                await self._raise_transition_error(repo, job_id, "update progress of")
        return job

    async def get_job(self, job_id: UUID) -> Job:
        async with self._session() as session:
            job = await JobRepository(session).get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self,
        queue_name: str | None = None,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs newest first.

        Returns:
            Tuple of (jobs, total matching the filters).
        """
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be >= 1 and offset >= 0")
        async with self._session() as session:
            return await JobRepository(session).list_jobs(
                queue_name=queue_name,
                status=status,
                job_type=job_type,
                limit=limit,
                offset=offset,
            )

    # =========================================================================
    # Metrics and sweeps
    # =========================================================================

    @staticmethod
    def _to_metrics(counts: dict[JobStatus, int]) -> QueueMetrics:
        return QueueMetrics(
            waiting=counts.get(JobStatus.PENDING, 0),
            active=counts.get(JobStatus.PROCESSING, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            failed=counts.get(JobStatus.FAILED, 0),
            delayed=counts.get(JobStatus.DELAYED, 0),
            cancelled=counts.get(JobStatus.CANCELLED, 0),
            total=sum(counts.values()),
        )

    async def get_queue_metrics(self, queue_name: str) -> QueueMetrics:
        """
        Current number of jobs per status for a queue.

        Raises:
            QueueNotFoundError: No such queue.
        """
        async with self._session() as session:
            if await QueueRepository(session).get_by_name(queue_name) is None:
                raise QueueNotFoundError(queue_name)
            counts = await JobRepository(session).count_by_status(queue_name)

        self._metrics.update_queue_depth(
            queue_name, {status.value: counts.get(status, 0) for status in JobStatus}
        )
        return self._to_metrics(counts)

    async def get_all_queue_metrics(self) -> dict[str, QueueMetrics]:
        async with self._session() as session:
            queues = await QueueRepository(session).list_queues()
            repo = JobRepository(session)
            return {
                queue.name: self._to_metrics(await repo.count_by_status(queue.name))
                for queue in queues
            }

    async def promote_delayed_jobs(self, queue_name: str | None = None) -> int:
        """
        Move DELAYED jobs whose next_retry_at has passed back to PENDING.

        Returns:
            Number of promoted jobs.
        """
        async with self._session() as session:
            count = await JobRepository(session).promote_delayed_jobs(queue_name)
        self._metrics.record_promoted(count)
        return count

    async def recover_stalled_jobs(self, older_than_seconds: float) -> int:
        """
        Return PROCESSING jobs claimed more than `older_than_seconds` ago to
        PENDING, attempts unchanged.

        Returns:
            Number of recovered jobs.
        """
        if older_than_seconds <= 0:
            raise ValidationError("older_than_seconds must be positive")
        async with self._session() as session:
            count = await JobRepository(session).recover_stalled_jobs(
                timedelta(seconds=older_than_seconds)
            )
        self._metrics.record_reclaimed(count)
        return count

    async def close(self) -> None:
        """Drop cached queue configuration and all event subscribers."""
        self._queues.clear()
        self._events.clear()
