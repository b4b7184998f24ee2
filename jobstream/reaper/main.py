"""
Reaper for delayed and stalled jobs.

Runs periodically to promote DELAYED jobs whose retry time has passed, so
they become claimable even on queues no worker is polling right now.

When a stalled-job timeout is configured it also returns jobs that have been
PROCESSING for longer than that timeout to PENDING. This is off by default:
without it a job abandoned by a crashed worker stays PROCESSING until an
operator intervenes.
"""

import asyncio
import logging
import signal

from jobstream.config import get_settings
from jobstream.db import close_db, init_db
from jobstream.dispatcher import Dispatcher
from jobstream.observability.logging import setup_logging

logger = logging.getLogger(__name__)


class Reaper:
    """
    Periodic maintenance loop.

    Each run:
    1. Promotes due DELAYED jobs of every queue to PENDING
    2. If enabled, returns stalled PROCESSING jobs to PENDING
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        interval_seconds: float | None = None,
        stalled_job_timeout_seconds: float | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            dispatcher: The dispatcher to sweep through.
            interval_seconds: Seconds between reaper runs.
            stalled_job_timeout_seconds: Reclaim PROCESSING jobs older than
                this. None disables reclaim.
        """
        settings = get_settings()
        self.dispatcher = dispatcher
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self.stalled_job_timeout = (
            stalled_job_timeout_seconds
            if stalled_job_timeout_seconds is not None
            else settings.reaper_stalled_job_timeout_seconds
        )
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(
            f"Reaper starting with interval {self.interval}s",
            extra={"stalled_job_timeout": self.stalled_job_timeout},
        )
        self._stop_event.clear()

        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._stop_event.set()

    async def run_once(self) -> tuple[int, int]:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Tuple of (promoted, recovered) job counts.
        """
        promoted = await self.dispatcher.promote_delayed_jobs()

        recovered = 0
        if self.stalled_job_timeout:
            recovered = await self.dispatcher.recover_stalled_jobs(self.stalled_job_timeout)

        return promoted, recovered


async def run_async() -> None:
    """Run a standalone reaper until SIGTERM/SIGINT."""
    setup_logging()
    session_factory = await init_db()

    dispatcher = Dispatcher(session_factory)
    reaper = Reaper(dispatcher)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await dispatcher.close()
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
