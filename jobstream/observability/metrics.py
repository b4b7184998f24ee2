"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobstream.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_ADDED,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_PROMOTED,
    METRIC_JOBS_RECLAIMED,
    METRIC_JOBS_RETRIED,
    METRIC_QUEUE_DEPTH,
    JobStatus,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue engine.

    Collects metrics for:
    - Queue depth by status
    - Jobs added, claimed and finished
    - Job execution duration
    - Scheduled retries
    - Delayed-job promotion and stalled-job reclaim
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs in a queue by status",
            ["queue", "status"],
            registry=self._registry,
        )

        self.jobs_added = Counter(
            METRIC_JOBS_ADDED,
            "Total number of jobs added",
            ["queue", "priority"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by workers",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of jobs reaching a terminal status",
            ["queue", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.jobs_retried = Counter(
            METRIC_JOBS_RETRIED,
            "Total number of retries scheduled after a failure",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_promoted = Counter(
            METRIC_JOBS_PROMOTED,
            "Total number of delayed jobs promoted to pending",
            registry=self._registry,
        )

        self.jobs_reclaimed = Counter(
            METRIC_JOBS_RECLAIMED,
            "Total number of stalled jobs returned to pending",
            registry=self._registry,
        )

    def record_job_added(self, queue: str, priority: str) -> None:
        """Record a job submission."""
        self.jobs_added.labels(queue=queue, priority=priority).inc()

    def record_job_claimed(self, queue: str) -> None:
        self.jobs_claimed.labels(queue=queue).inc()

    def record_job_finished(
        self,
        queue: str,
        status: JobStatus | str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record a terminal transition and, when known, its duration."""
        status = str(status)
        self.jobs_finished.labels(queue=queue, status=status).inc()
        if duration_seconds is not None:
            self.job_duration.labels(queue=queue, status=status).observe(duration_seconds)

    def record_retry_scheduled(self, queue: str) -> None:
        self.jobs_retried.labels(queue=queue).inc()

    def record_promoted(self, count: int) -> None:
        if count > 0:
            self.jobs_promoted.inc(count)

    def record_reclaimed(self, count: int) -> None:
        if count > 0:
            self.jobs_reclaimed.inc(count)

    def update_queue_depth(self, queue: str, counts: dict[str, int]) -> None:
        """Update queue depth gauges for one queue."""
        for status, depth in counts.items():
            self.queue_depth.labels(queue=queue, status=status).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
