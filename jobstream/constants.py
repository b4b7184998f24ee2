"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (atomic claim)
    - PENDING -> CANCELLED (explicit cancel)
    - DELAYED -> PENDING (promotion sweep once next_retry_at has passed)
    - DELAYED -> CANCELLED (explicit cancel)
    - PROCESSING -> COMPLETED (handler success)
    - PROCESSING -> DELAYED (handler failure, attempts remain)
    - PROCESSING -> FAILED (handler failure, attempts exhausted)
    - FAILED/CANCELLED/COMPLETED -> PENDING (manual retry)
    """

    PENDING = "pending"
    DELAYED = "delayed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(StrEnum):
    """Job priority levels for queue ordering."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class BackoffType(StrEnum):
    """Retry delay strategies."""

    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class JobEventType(StrEnum):
    """Lifecycle events published by the dispatcher."""

    JOB_ADDED = "job.added"
    JOB_STARTED = "job.started"
    JOB_RETRIED = "job.retried"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    JOB_CANCELLED = "job.cancelled"


class WorkerState(StrEnum):
    """What a polling loop is doing right now."""

    IDLE = "idle"
    ACTIVE = "active"


# Priority weights for ordering (higher = processed first)
PRIORITY_WEIGHTS: dict[JobPriority, int] = {
    JobPriority.LOW: 1,
    JobPriority.NORMAL: 5,
    JobPriority.HIGH: 10,
    JobPriority.URGENT: 100,
}

CANCELLABLE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.DELAYED}
)
MANUALLY_RETRYABLE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.DELAYED}
)

# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_CONCURRENCY = 5
MAX_CONCURRENCY = 100
DEFAULT_JOB_TIMEOUT_SECONDS = 300.0

# Failure reasons recorded on the job
ERROR_UNSUPPORTED_TYPE = "unsupported type"
ERROR_EXECUTION_TIMEOUT = "execution timeout"

# Metrics names
METRIC_QUEUE_DEPTH = "jobstream_queue_depth"
METRIC_JOBS_ADDED = "jobstream_jobs_added_total"
METRIC_JOBS_CLAIMED = "jobstream_jobs_claimed_total"
METRIC_JOBS_FINISHED = "jobstream_jobs_finished_total"
METRIC_JOBS_RETRIED = "jobstream_jobs_retried_total"
METRIC_JOB_DURATION = "jobstream_job_duration_seconds"
METRIC_JOBS_PROMOTED = "jobstream_delayed_jobs_promoted_total"
METRIC_JOBS_RECLAIMED = "jobstream_stalled_jobs_reclaimed_total"

# Trace span names
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
