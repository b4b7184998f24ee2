"""
Queue-related type definitions.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from jobstream.constants import MAX_CONCURRENCY, BackoffType


class BackoffPolicy(BaseModel):
    """
    Delay between successive retries of a failing job.

    Exponential: delay * multiplier ** attempts.
    Fixed: delay.
    """

    model_config = ConfigDict(frozen=True)

    type: BackoffType = BackoffType.EXPONENTIAL
    delay: float = Field(default=5.0, ge=0, description="Base delay in seconds")
    multiplier: float = Field(default=2.0, ge=1)


class RateLimit(BaseModel):
    """At most `max` claims per `duration` seconds."""

    model_config = ConfigDict(frozen=True)

    max: int = Field(..., ge=1)
    duration: float = Field(..., gt=0)


class QueueOptions(BaseModel):
    """
    Options accepted when creating or updating a queue.
    Unset values fall back to settings.
    """

    description: str | None = None
    concurrency: int | None = Field(default=None, ge=1, le=MAX_CONCURRENCY)
    rate_limit: RateLimit | None = None
    attempts: int | None = Field(default=None, ge=1)
    backoff: BackoffPolicy | None = None
    timeout: float | None = Field(default=None, gt=0, description="Execution timeout in seconds")


class QueueConfig(BaseModel):
    """
    Immutable snapshot of a queue's configuration.
    This is what the dispatcher caches and what workers read each tick.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID
    name: str
    description: str | None = None
    is_active: bool
    concurrency: int
    rate_limit: RateLimit | None = None
    attempts: int
    backoff: BackoffPolicy
    timeout: float
    created_at: datetime

    @classmethod
    def from_model(cls, queue) -> "QueueConfig":
        """Build a snapshot from a Queue ORM row."""
        rate_limit = None
        if queue.rate_limit_max is not None and queue.rate_limit_duration_seconds:
            rate_limit = RateLimit(
                max=queue.rate_limit_max,
                duration=queue.rate_limit_duration_seconds,
            )
        return cls(
            id=queue.id,
            name=queue.name,
            description=queue.description,
            is_active=queue.is_active,
            concurrency=queue.concurrency,
            rate_limit=rate_limit,
            attempts=queue.default_attempts,
            backoff=BackoffPolicy(
                type=queue.backoff_type,
                delay=queue.backoff_delay_seconds,
                multiplier=queue.backoff_multiplier,
            ),
            timeout=queue.timeout_seconds,
            created_at=queue.created_at,
        )


class QueueStats(BaseModel):
    """Aggregate counters persisted on the queue row."""

    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    average_processing_time_ms: float = 0.0


class QueueMetrics(BaseModel):
    """Current number of jobs per status for one queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    cancelled: int = 0
    total: int = 0
