"""
Job repository for database operations.
Implements the core data access patterns for job management.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import Update, and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from jobstream.clock import utcnow
from jobstream.constants import (
    CANCELLABLE_STATUSES,
    MANUALLY_RETRYABLE_STATUSES,
    PRIORITY_WEIGHTS,
    JobPriority,
    JobStatus,
)
from jobstream.db.models import Job

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job database operations.

    Every state transition is a conditional UPDATE guarded by the status the
    caller expects the job to be in, so concurrent callers racing for the
    same job are serialized by the database:
    - Claim with UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED)
    - Retry decision guarded by the attempts value that was read
    - Cancel guarded by status PENDING/DELAYED
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def _update_one(self, stmt: Update) -> Job | None:
        """Run a single-row conditional update and reload the row it hit."""
        result = await self._session.execute(
            stmt.returning(Job.id).execution_options(synchronize_session=False)
        )
        job_id = result.scalar_one_or_none()
        if job_id is None:
            return None
        return await self._session.get(Job, job_id, populate_existing=True)

    async def create_job(
        self,
        queue_name: str,
        job_type: str,
        data: Any,
        priority: JobPriority = JobPriority.NORMAL,
        max_attempts: int = 3,
        delay_seconds: float = 0.0,
        metadata: dict[str, Any] | None = None,
        remove_on_complete: bool = False,
        remove_on_fail: bool = False,
    ) -> Job:
        """
        Persist a new job.

        Args:
            queue_name: Name of the queue the job belongs to.
            job_type: Selects the handler.
            data: Opaque JSON payload.
            priority: Job priority level.
            max_attempts: Failed executions allowed before FAILED.
            delay_seconds: If positive, the job starts DELAYED.
            metadata: Free-form metadata.
            remove_on_complete: Delete the record once COMPLETED.
            remove_on_fail: Delete the record once FAILED.

        Returns:
            The created Job.
        """
        now = utcnow()
        delayed = delay_seconds > 0
        job = Job(
            queue_name=queue_name,
            type=job_type,
            data=data,
            status=JobStatus.DELAYED if delayed else JobStatus.PENDING,
            priority=priority,
            priority_weight=PRIORITY_WEIGHTS[priority],
            progress=0,
            attempts=0,
            max_attempts=max_attempts,
            job_metadata=metadata or {},
            remove_on_complete=remove_on_complete,
            remove_on_fail=remove_on_fail,
            next_retry_at=now + timedelta(seconds=delay_seconds) if delayed else None,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created new job",
            extra={"job_id": str(job.id), "queue": queue_name, "status": job.status.value},
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        queue_name: str | None = None,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs with optional filtering, newest first.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if queue_name is not None:
            filters.append(Job.queue_name == queue_name)
        if status is not None:
            filters.append(Job.status == status)
        if job_type is not None:
            filters.append(Job.type == job_type)

        count_stmt = select(func.count()).select_from(Job).where(and_(True, *filters))
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(Job)
            .where(and_(True, *filters))
            .order_by(Job.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def claim_next_job(self, queue_name: str) -> Job | None:
        """
        Atomically claim the next PENDING job of a queue.

        Picks the highest priority, then the oldest job, and flips it to
        PROCESSING in one statement guarded by status = PENDING. Under
        concurrent callers each row is handed to exactly one of them.

        Args:
            queue_name: The queue to claim from.

        Returns:
            The claimed Job, or None if nothing is claimable.
        """
        now = utcnow()
        # Aliased so the subquery is not correlated to the UPDATE target
        pending = aliased(Job)
        candidate = (
            select(pending.id)
            .where(pending.queue_name == queue_name, pending.status == JobStatus.PENDING)
            .order_by(pending.priority_weight.desc(), pending.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(Job)
            .where(Job.id == candidate, Job.status == JobStatus.PENDING)
            .values(
                status=JobStatus.PROCESSING,
                processed_at=now,
                updated_at=now,
            )
        )
        job = await self._update_one(stmt)

        if job is not None:
            logger.debug(
                "Claimed job",
                extra={"job_id": str(job.id), "queue": queue_name, "attempts": job.attempts},
            )
        return job

    async def promote_delayed_jobs(self, queue_name: str | None = None) -> int:
        """
        Move DELAYED jobs whose next_retry_at has passed back to PENDING.

        Args:
            queue_name: Restrict the sweep to one queue.

        Returns:
            Number of promoted jobs.
        """
        now = utcnow()
        filters = [Job.status == JobStatus.DELAYED, Job.next_retry_at <= now]
        if queue_name is not None:
            filters.append(Job.queue_name == queue_name)

        stmt = (
            update(Job)
            .where(and_(*filters))
            .values(status=JobStatus.PENDING, next_retry_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount or 0

        if count > 0:
            logger.info(
                f"Promoted {count} delayed jobs",
                extra={"queue": queue_name, "job_count": count},
            )
        return count

    async def complete_job(self, job_id: UUID, result: Any = None) -> Job | None:
        """
        Transition PROCESSING -> COMPLETED.

        Args:
            job_id: The job UUID.
            result: Opaque result document.

        Returns:
            Updated Job or None if the job was not PROCESSING.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PROCESSING)
            .values(
                status=JobStatus.COMPLETED,
                result=result,
                progress=100,
                completed_at=now,
                updated_at=now,
            )
        )
        job = await self._update_one(stmt)

        if job:
            logger.info("Job completed successfully", extra={"job_id": str(job_id)})
        return job

    async def schedule_retry(
        self,
        job_id: UUID,
        expected_attempts: int,
        retry_at: datetime,
        error: str | None,
        trace: str | None = None,
        failed_at: datetime | None = None,
    ) -> Job | None:
        """
        Transition PROCESSING -> DELAYED after a failure, incrementing attempts.

        Args:
            job_id: The job UUID.
            expected_attempts: Attempts value read by the caller; the update
                only applies if it is unchanged.
            retry_at: When the job becomes claimable again.
            error: Failure reason.
            trace: Optional stack trace.
            failed_at: Failure instant. Defaults to now.

        Returns:
            Updated Job or None if the precondition did not hold.
        """
        now = failed_at or utcnow()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.PROCESSING,
                Job.attempts == expected_attempts,
            )
            .values(
                status=JobStatus.DELAYED,
                attempts=Job.attempts + 1,
                error=error,
                stack_trace=trace,
                failed_at=now,
                next_retry_at=retry_at,
                updated_at=now,
            )
        )
        job = await self._update_one(stmt)

        if job:
            logger.info(
                "Job queued for retry",
                extra={
                    "job_id": str(job_id),
                    "attempts": job.attempts,
                    "next_retry_at": retry_at.isoformat(),
                },
            )
        return job

    async def fail_job(
        self,
        job_id: UUID,
        expected_attempts: int,
        error: str | None,
        trace: str | None = None,
        failed_at: datetime | None = None,
    ) -> Job | None:
        """
        Transition PROCESSING -> FAILED (terminal), incrementing attempts.

        Returns:
            Updated Job or None if the precondition did not hold.
        """
        now = failed_at or utcnow()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.PROCESSING,
                Job.attempts == expected_attempts,
            )
            .values(
                status=JobStatus.FAILED,
                attempts=Job.attempts + 1,
                error=error,
                stack_trace=trace,
                failed_at=now,
                next_retry_at=None,
                updated_at=now,
            )
        )
        job = await self._update_one(stmt)

        if job:
            logger.warning(
                f"Job failed after {job.attempts} attempts",
                extra={"job_id": str(job_id), "error": error},
            )
        return job

    async def reset_for_retry(
        self, job_id: UUID, retry_at: datetime | None = None
    ) -> Job | None:
        """
        Manual retry: attempts reset and errors cleared.

        The job goes back to PENDING, or to DELAYED until `retry_at` if given.

        Returns:
            Updated Job or None if the job is not in a retryable status.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status.in_(tuple(MANUALLY_RETRYABLE_STATUSES)))
            .values(
                status=JobStatus.DELAYED if retry_at else JobStatus.PENDING,
                attempts=0,
                progress=0,
                error=None,
                stack_trace=None,
                result=None,
                processed_at=None,
                completed_at=None,
                failed_at=None,
                next_retry_at=retry_at,
                updated_at=now,
            )
        )
        job = await self._update_one(stmt)

        if job:
            logger.info("Job reset for manual retry", extra={"job_id": str(job_id)})
        return job

    async def cancel_job(self, job_id: UUID) -> Job | None:
        """
        Transition PENDING/DELAYED -> CANCELLED.

        Returns:
            Updated Job or None if the job was already claimed or terminal.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status.in_(tuple(CANCELLABLE_STATUSES)))
            .values(status=JobStatus.CANCELLED, next_retry_at=None, updated_at=now)
        )
        job = await self._update_one(stmt)

        if job:
            logger.info("Job cancelled", extra={"job_id": str(job_id)})
        return job

    async def update_progress(self, job_id: UUID, progress: int) -> Job | None:
        """
        Record handler progress while PROCESSING.

        Returns:
            Updated Job or None if the job is not PROCESSING.
        """
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PROCESSING)
            .values(progress=max(0, min(100, progress)), updated_at=utcnow())
        )
        return await self._update_one(stmt)

    async def delete_job(self, job_id: UUID) -> bool:
        """
        Delete a job that is not currently PROCESSING.

        Returns:
            True if a row was deleted.
        """
        stmt = (
            delete(Job)
            .where(Job.id == job_id, Job.status != JobStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        deleted = (result.rowcount or 0) > 0

        if deleted:
            logger.info("Job deleted", extra={"job_id": str(job_id)})
        return deleted

    async def delete_queue_jobs(self, queue_name: str) -> int:
        """
        Delete every job of a queue except those still PROCESSING.

        Returns:
            Number of deleted jobs.
        """
        stmt = (
            delete(Job)
            .where(Job.queue_name == queue_name, Job.status != JobStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def list_job_ids(
        self,
        status: JobStatus,
        queue_name: str | None = None,
        job_type: str | None = None,
    ) -> list[UUID]:
        """Get the ids of jobs in a status, optionally filtered."""
        filters = [Job.status == status]
        if queue_name is not None:
            filters.append(Job.queue_name == queue_name)
        if job_type is not None:
            filters.append(Job.type == job_type)

        stmt = select(Job.id).where(and_(*filters)).order_by(Job.created_at.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def recover_stalled_jobs(self, older_than: timedelta) -> int:
        """
        Return PROCESSING jobs claimed longer ago than `older_than` to PENDING.

        Used only when stalled-job reclaim is enabled. Attempts are unchanged.

        Returns:
            Number of recovered jobs.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(
                Job.status == JobStatus.PROCESSING,
                Job.processed_at < now - older_than,
            )
            .values(
                status=JobStatus.PENDING,
                processed_at=None,
                progress=0,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount or 0

        if count > 0:
            logger.warning(f"Recovered {count} stalled jobs")
        return count

    async def count_by_status(self, queue_name: str | None = None) -> dict[JobStatus, int]:
        """
        Get job counts by status.

        Args:
            queue_name: Optional queue filter.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if queue_name is not None:
            stmt = stmt.where(Job.queue_name == queue_name)

        result = await self._session.execute(stmt)
        return {JobStatus(status): count for status, count in result.all()}
