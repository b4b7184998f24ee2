"""
SQLAlchemy database models.
Defines the Job and Queue tables.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobstream.clock import utcnow
from jobstream.constants import (
    DEFAULT_CONCURRENCY,
    DEFAULT_JOB_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    PRIORITY_WEIGHTS,
    BackoffType,
    JobPriority,
    JobStatus,
)

# JSONB on PostgreSQL, plain JSON elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(enum_cls: type) -> list[str]:
    return [e.value for e in enum_cls]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Queue(Base):
    """
    A named channel of jobs with its own configuration and counters.

    The name is globally unique. Jobs reference their queue by name.
    """

    __tablename__ = "queues"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    concurrency: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_CONCURRENCY
    )

    # Rate limit: at most rate_limit_max claims per rate_limit_duration_seconds
    rate_limit_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_limit_duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Default job options
    default_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS
    )
    backoff_type: Mapped[BackoffType] = mapped_column(
        Enum(
            BackoffType,
            name="backoff_type",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=BackoffType.EXPONENTIAL,
    )
    backoff_delay_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    backoff_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=2.0)
    timeout_seconds: Mapped[float] = mapped_column(
        Float, nullable=False, default=DEFAULT_JOB_TIMEOUT_SECONDS
    )

    # Aggregate counters over finished jobs
    total_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_processing_time_ms: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"Queue(name={self.name}, active={self.is_active}, "
            f"concurrency={self.concurrency})"
        )


class Job(Base):
    """
    Job model representing a unit of deferred work.

    This is the authoritative source of truth for job state.
    All lifecycle transitions are conditional updates on this table.

    Key invariants:
    - attempts <= max_attempts
    - next_retry_at is set iff status is DELAYED
    - priority never changes after creation
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )
    priority: Mapped[JobPriority] = mapped_column(
        Enum(
            JobPriority,
            name="job_priority",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=JobPriority.NORMAL,
    )
    # Ordering key derived from priority at creation
    priority_weight: Mapped[int] = mapped_column(
        Integer, nullable=False, default=PRIORITY_WEIGHTS[JobPriority.NORMAL]
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS
    )

    # Opaque documents
    data: Mapped[Any] = mapped_column(JSONDocument, nullable=True)
    result: Mapped[Any] = mapped_column(JSONDocument, nullable=True)
    job_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONDocument, nullable=False, default=dict
    )

    # Error tracking
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Cleanup flags
    remove_on_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    remove_on_fail: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # Claim candidates and per-status counts
        Index("ix_jobs_queue_status", "queue_name", "status"),
        Index(
            "ix_jobs_queue_poll", "queue_name", "status", "priority_weight", "created_at"
        ),
        # Promotion sweep
        Index("ix_jobs_status_next_retry", "status", "next_retry_at"),
        Index("ix_jobs_type_created", "type", "created_at"),
    )

    @property
    def processing_time_ms(self) -> float | None:
        """Time between claim and terminal transition, if both are known."""
        finished_at = self.completed_at or self.failed_at
        if self.processed_at is None or finished_at is None:
            return None
        return (finished_at - self.processed_at).total_seconds() * 1000

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue_name}, type={self.type}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )
