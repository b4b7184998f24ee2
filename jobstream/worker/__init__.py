"""
Worker module.
Contains the polling loops, the handler registry and per-queue rate limiting.
"""

from jobstream.worker.handlers import (
    HandlerRegistry,
    JobHandler,
    default_registry,
    get_handler,
    list_handlers,
    register_handler,
)
from jobstream.worker.main import Worker, WorkerPool, run
from jobstream.worker.rate_limit import RateLimiter, TokenBucket

__all__ = [
    "Worker",
    "WorkerPool",
    "run",
    "HandlerRegistry",
    "JobHandler",
    "default_registry",
    "register_handler",
    "get_handler",
    "list_handlers",
    "RateLimiter",
    "TokenBucket",
]
