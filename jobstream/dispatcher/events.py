"""
In-process publish/subscribe channel for job lifecycle events.

Delivery is at-most-once: events are not persisted, not replayed, and a
subscriber registered after a publish never sees it. A failing subscriber
is logged and skipped; it never affects the job or other subscribers.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable

from jobstream.constants import JobEventType
from jobstream.types.events import JobEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[JobEvent], Awaitable[None] | None]


class EventBus:
    """Fan-out of JobEvent objects to subscribers, in subscription order."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[JobEventType | None, EventCallback]] = []

    def subscribe(
        self,
        callback: EventCallback,
        event_type: JobEventType | None = None,
    ) -> Callable[[], None]:
        """
        Register a sync or async callback.

        Args:
            callback: Called with each matching event.
            event_type: Only deliver this type. None means every event.

        Returns:
            A function that removes the subscription.
        """
        entry = (event_type, callback)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def publish(self, event: JobEvent) -> None:
        for event_type, callback in list(self._subscribers):
            if event_type is not None and event_type != event.event_type:
                continue
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    extra={"event_type": event.event_type.value, "job_id": str(event.job_id)},
                )

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)
