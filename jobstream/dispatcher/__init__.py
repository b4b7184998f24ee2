"""
Dispatcher module.
Mediates every job lifecycle operation and publishes lifecycle events.
"""

from jobstream.dispatcher.backoff import compute_backoff, next_retry_at
from jobstream.dispatcher.dispatcher import Dispatcher
from jobstream.dispatcher.events import EventBus

__all__ = ["Dispatcher", "EventBus", "compute_backoff", "next_retry_at"]
