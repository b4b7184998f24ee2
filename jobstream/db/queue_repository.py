"""
Queue registry persistence.
Named queue configuration and the aggregate counters kept on each row.
"""

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobstream.clock import utcnow
from jobstream.db.models import Queue

logger = logging.getLogger(__name__)


class QueueRepository:
    """Repository for queue database operations."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_name(self, name: str) -> Queue | None:
        stmt = select(Queue).where(Queue.name == name).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_queues(self, active: bool | None = None) -> Sequence[Queue]:
        """List queues ordered by name, optionally filtered by active flag."""
        stmt = select(Queue).order_by(Queue.name.asc())
        if active is not None:
            stmt = stmt.where(Queue.is_active == active)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create(self, name: str, **columns: Any) -> Queue:
        """
        Persist a new queue.

        Args:
            name: Unique queue name.
            **columns: Column values for the new row.

        Returns:
            The created Queue.
        """
        now = utcnow()
        queue = Queue(name=name, created_at=now, updated_at=now, **columns)
        self._session.add(queue)
        await self._session.flush()

        logger.info("Created queue", extra={"queue": name})
        return queue

    async def update(self, name: str, **columns: Any) -> Queue | None:
        """
        Update configuration columns of a queue.

        Returns:
            Updated Queue or None if it does not exist.
        """
        stmt = (
            update(Queue)
            .where(Queue.name == name)
            .values(updated_at=utcnow(), **columns)
            .returning(Queue.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        queue_id = result.scalar_one_or_none()
        if queue_id is None:
            return None

        logger.info("Updated queue", extra={"queue": name, "fields": sorted(columns)})
        return await self._session.get(Queue, queue_id, populate_existing=True)

    async def delete(self, name: str) -> bool:
        stmt = delete(Queue).where(Queue.name == name).execution_options(
            synchronize_session=False
        )
        result = await self._session.execute(stmt)
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info("Deleted queue", extra={"queue": name})
        return deleted

    async def record_outcome(
        self,
        name: str,
        succeeded: bool,
        processing_time_ms: float | None,
    ) -> None:
        """
        Fold one finished job into the queue's counters.

        Runs as a single UPDATE so concurrent workers never lose an
        increment. The running mean is over every finished job.
        """
        finished = Queue.completed_jobs + Queue.failed_jobs
        values: dict[str, Any] = {"total_jobs": Queue.total_jobs + 1}
        if succeeded:
            values["completed_jobs"] = Queue.completed_jobs + 1
        else:
            values["failed_jobs"] = Queue.failed_jobs + 1
        if processing_time_ms is not None:
            values["average_processing_time_ms"] = (
                Queue.average_processing_time_ms * finished + processing_time_ms
            ) / (finished + 1)

        stmt = (
            update(Queue)
            .where(Queue.name == name)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
