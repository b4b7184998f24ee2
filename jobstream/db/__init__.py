"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobstream.db.connection import (
    close_db,
    create_engine,
    create_schema,
    create_session_factory,
    get_engine,
    init_db,
    session_scope,
)
from jobstream.db.models import Base, Job, Queue
from jobstream.db.queue_repository import QueueRepository
from jobstream.db.repository import JobRepository

__all__ = [
    "create_engine",
    "create_session_factory",
    "create_schema",
    "get_engine",
    "init_db",
    "close_db",
    "session_scope",
    "Base",
    "Job",
    "Queue",
    "JobRepository",
    "QueueRepository",
]
