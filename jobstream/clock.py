"""
Time helpers.

All persisted timestamps are naive UTC with microsecond resolution, set by
the application rather than the database clock.
"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)

