"""
Retry backoff computation.
"""

from datetime import datetime, timedelta

from jobstream.constants import BackoffType
from jobstream.types.queue import BackoffPolicy


def compute_backoff(policy: BackoffPolicy, attempts: int) -> float:
    """
    Seconds to wait before the next execution.

    Args:
        policy: The queue's backoff policy.
        attempts: Failed executions so far, including the one just recorded.

    Returns:
        Delay in seconds. Exponential gives delay * multiplier ** attempts.
    """
    if policy.type == BackoffType.FIXED:
        return policy.delay
    return policy.delay * policy.multiplier**attempts


def next_retry_at(policy: BackoffPolicy, attempts: int, failed_at: datetime) -> datetime:
    """Instant at which a job that failed at `failed_at` becomes claimable again."""
    return failed_at + timedelta(seconds=compute_backoff(policy, attempts))
