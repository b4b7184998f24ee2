"""
Event type definitions for the dispatcher's publish/subscribe channel.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from jobstream.clock import utcnow
from jobstream.constants import JobEventType, JobStatus


class JobEvent(BaseModel):
    """
    Event emitted when job state changes.
    Consumed by notification layers; delivery is best-effort.
    """

    event_type: JobEventType
    job_id: UUID
    queue_name: str
    job_type: str
    status: JobStatus
    timestamp: datetime
    data: dict[str, Any] | None = None

    @classmethod
    def _from_job(
        cls,
        event_type: JobEventType,
        job: Any,
        data: dict[str, Any] | None = None,
    ) -> "JobEvent":
        return cls(
            event_type=event_type,
            job_id=job.id,
            queue_name=job.queue_name,
            job_type=job.type,
            status=job.status,
            timestamp=utcnow(),
            data=data,
        )

    @classmethod
    def job_added(cls, job: Any) -> "JobEvent":
        """Create a job added event."""
        return cls._from_job(
            JobEventType.JOB_ADDED,
            job,
            {
                "priority": job.priority,
                "max_attempts": job.max_attempts,
                "next_retry_at": job.next_retry_at,
            },
        )

    @classmethod
    def job_started(cls, job: Any) -> "JobEvent":
        """Create a job started event."""
        return cls._from_job(
            JobEventType.JOB_STARTED,
            job,
            {"attempt": job.attempts + 1, "processed_at": job.processed_at},
        )

    @classmethod
    def job_retried(cls, job: Any, scheduled: bool) -> "JobEvent":
        """Create a job retried event (scheduled backoff or manual)."""
        return cls._from_job(
            JobEventType.JOB_RETRIED,
            job,
            {
                "scheduled": scheduled,
                "attempts": job.attempts,
                "next_retry_at": job.next_retry_at,
                "error": job.error,
            },
        )

    @classmethod
    def job_completed(cls, job: Any) -> "JobEvent":
        """Create a job completed event."""
        return cls._from_job(JobEventType.JOB_COMPLETED, job, {"result": job.result})

    @classmethod
    def job_failed(cls, job: Any) -> "JobEvent":
        """Create a terminal job failure event."""
        return cls._from_job(
            JobEventType.JOB_FAILED,
            job,
            {"error": job.error, "attempts": job.attempts},
        )

    @classmethod
    def job_cancelled(cls, job: Any) -> "JobEvent":
        """Create a job cancelled event."""
        return cls._from_job(JobEventType.JOB_CANCELLED, job)
