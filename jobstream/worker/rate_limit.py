"""
Per-queue rate limiting for workers.
"""

import time
from dataclasses import dataclass

from jobstream.types.queue import RateLimit


@dataclass
class TokenBucket:
    """
    Token bucket for rate limiting.

    Holds up to `capacity` tokens and refills continuously. A queue limited
    to `max` jobs per `duration` seconds gets capacity=max and
    refill_rate=max/duration.
    """

    capacity: float
    tokens: float
    refill_rate: float  # tokens per second
    last_refill: float

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1.0) -> bool:
        """
        Try to consume tokens from the bucket.

        Args:
            tokens: Number of tokens to consume.

        Returns:
            True if tokens were consumed, False if rate limited.
        """
        self._refill()

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True

        return False

    def refund(self, tokens: float = 1.0) -> None:
        """Give back tokens that were consumed but not used."""
        self.tokens = min(self.capacity, self.tokens + tokens)

    @property
    def wait_time(self) -> float:
        """Time in seconds until at least 1 token is available."""
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.refill_rate


class RateLimiter:
    """
    In-memory rate limiter using one token bucket per queue.

    Shared by every polling loop of a process; the loops of one queue
    draw from the same bucket. A bucket is rebuilt when the queue's limit
    changes, and dropped when the queue has no limit.
    """

    def __init__(self) -> None:
        self._buckets: dict[str, tuple[RateLimit, TokenBucket]] = {}

    def _bucket(self, queue_name: str, limit: RateLimit | None) -> TokenBucket | None:
        if limit is None:
            self._buckets.pop(queue_name, None)
            return None

        entry = self._buckets.get(queue_name)
        if entry is None or entry[0] != limit:
            bucket = TokenBucket(
                capacity=limit.max,
                tokens=limit.max,
                refill_rate=limit.max / limit.duration,
                last_refill=time.monotonic(),
            )
            self._buckets[queue_name] = (limit, bucket)
            return bucket
        return entry[1]

    def acquire(self, queue_name: str, limit: RateLimit | None) -> bool:
        """
        Take one token before claiming a job.

        Returns:
            False if the queue is rate limited right now.
        """
        bucket = self._bucket(queue_name, limit)
        return bucket is None or bucket.consume()

    def release(self, queue_name: str) -> None:
        """Return the token of a poll that claimed nothing."""
        entry = self._buckets.get(queue_name)
        if entry is not None:
            entry[1].refund()

    def wait_time(self, queue_name: str) -> float:
        entry = self._buckets.get(queue_name)
        return entry[1].wait_time if entry else 0.0

    def reset(self, queue_name: str) -> None:
        """Reset rate limit for a queue."""
        self._buckets.pop(queue_name, None)
