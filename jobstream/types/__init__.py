"""
Type definitions for the job queue engine.
Contains input/output type definitions grouped by concern.
"""

from jobstream.types.events import JobEvent
from jobstream.types.job import (
    JobContext,
    JobOptions,
    JobResult,
    ProgressReporter,
)
from jobstream.types.queue import (
    BackoffPolicy,
    QueueConfig,
    QueueMetrics,
    QueueOptions,
    QueueStats,
    RateLimit,
)
from jobstream.types.worker import WorkerMetrics

__all__ = [
    # Job types
    "JobOptions",
    "JobResult",
    "JobContext",
    "ProgressReporter",
    # Queue types
    "BackoffPolicy",
    "RateLimit",
    "QueueOptions",
    "QueueConfig",
    "QueueStats",
    "QueueMetrics",
    # Worker types
    "WorkerMetrics",
    # Event types
    "JobEvent",
]
