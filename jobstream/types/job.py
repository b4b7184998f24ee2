"""
Job-related type definitions for internal use.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobstream.constants import JobPriority

ProgressReporter = Callable[[int], Awaitable[None]]


class JobOptions(BaseModel):
    """
    Options accepted when adding a job.
    Unset values fall back to the queue's default job options.
    """

    delay: float = Field(default=0.0, ge=0, description="Seconds before the job becomes claimable")
    priority: JobPriority = Field(default=JobPriority.NORMAL, description="Fixed at creation")
    attempts: int | None = Field(default=None, ge=1, description="Maximum failed executions")
    metadata: dict[str, Any] = Field(default_factory=dict)
    remove_on_complete: bool = False
    remove_on_fail: bool = False


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: Any = None
    error: str | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: UUID
    queue_name: str
    job_type: str
    attempts: int
    max_attempts: int
    payload: Any
    metadata: dict[str, Any]
    claimed_at: datetime | None = None
    progress_reporter: ProgressReporter | None = None

    @property
    def attempt(self) -> int:
        """The 1-based number of the execution in progress."""
        return self.attempts + 1

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure now would be terminal."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts after this one."""
        return max(0, self.max_attempts - self.attempt)

    async def report_progress(self, progress: int) -> None:
        """Report intermediate progress (0-100). Observational only."""
        if self.progress_reporter is not None:
            await self.progress_reporter(progress)
