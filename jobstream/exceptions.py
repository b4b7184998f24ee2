"""
Exception hierarchy for the job queue engine.

ValidationError and NotFoundError surface synchronously to dispatcher callers.
ExecutionError and its subclasses are raised inside workers and converted
into failure reports; they never escape a worker loop. PersistenceError wraps
store failures and is logged and retried by polling loops.
"""

from uuid import UUID


class JobQueueError(Exception):
    """Base exception for job queue operations."""


class ValidationError(JobQueueError):
    """Raised for unknown or inactive queues and malformed options."""


class InvalidTransitionError(ValidationError):
    """Raised when a job is not in a status that allows the operation."""

    def __init__(self, job_id: UUID, status: str, operation: str):
        self.job_id = job_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} job {job_id} in status '{status}'")


class NotFoundError(JobQueueError):
    """Raised when a job or queue cannot be found."""


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: UUID):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class QueueNotFoundError(NotFoundError):
    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Queue not found: {queue_name}")


class ExecutionError(JobQueueError):
    """Raised when a handler reports or causes a failure."""

    def __init__(self, message: str, trace: str | None = None):
        self.trace = trace
        super().__init__(message)


class UnsupportedJobTypeError(ExecutionError):
    """Raised when no handler is registered for a job type."""


class JobTimeoutError(ExecutionError, TimeoutError):
    """Raised when a handler runs longer than its queue timeout."""


class PersistenceError(JobQueueError):
    """Raised when the store is unreachable or a write fails unexpectedly."""
