"""
Worker status type definitions.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from jobstream.constants import WorkerState


class WorkerMetrics(BaseModel):
    """
    Point-in-time status of one polling loop.
    Kept in process memory by the worker pool, never persisted.
    """

    worker_id: str
    queue_name: str
    slot: int
    status: WorkerState
    current_job_id: UUID | None = None
    jobs_processed: int = 0
    jobs_failed: int = 0
    average_processing_time_ms: float = 0.0
    last_job_at: datetime | None = None
    last_heartbeat: datetime | None = None
