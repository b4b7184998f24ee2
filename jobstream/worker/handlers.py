"""
Job handlers registry and implementations.

A handler is an async function taking a JobContext and returning a
JobResult. Returning success=False or raising any exception counts as a
failed execution. Handlers may run more than once for the same job (one
run per attempt) and should be written accordingly.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from jobstream.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]


class HandlerRegistry:
    """Mapping from job type to the handler that executes it."""

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Args:
            job_type: The job type this handler processes.

        Returns:
            Decorator function.

        Example:
            @registry.register("send_email")
            async def handle_send_email(context: JobContext) -> JobResult:
                ...
        """

        def decorator(handler: JobHandler) -> JobHandler:
            self.add(job_type, handler)
            return handler

        return decorator

    def add(self, job_type: str, handler: JobHandler) -> None:
        if not job_type:
            raise ValueError("job_type must not be empty")
        self._handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    def get(self, job_type: str) -> JobHandler | None:
        """
        Get the handler for a job type.

        Args:
            job_type: The job type.

        Returns:
            The handler function or None if not found.
        """
        return self._handlers.get(job_type)

    def list_types(self) -> list[str]:
        """List all registered job types."""
        return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers


# Registry used by workers unless another one is supplied
default_registry = HandlerRegistry()


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """Register a handler on the default registry."""
    return default_registry.register(job_type)


def get_handler(job_type: str) -> JobHandler | None:
    return default_registry.get(job_type)


def list_handlers() -> list[str]:
    return default_registry.list_types()


# ============================================================================
# Built-in diagnostic handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(context: JobContext) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the input payload as output.
    """
    logger.info(
        "Echo job executing",
        extra={"job_id": str(context.job_id), "attempt": context.attempt},
    )

    return JobResult(
        success=True,
        output={"echo": context.payload},
    )


@register_handler("sleep")
async def handle_sleep(context: JobContext) -> JobResult:
    """
    Sleep handler for testing timeouts and shutdown.

    Payload may contain:
    - duration_seconds: How long to sleep (default 1)
    - steps: Number of progress reports along the way (default 1)
    """
    payload = context.payload if isinstance(context.payload, dict) else {}
    duration = float(payload.get("duration_seconds", 1))
    steps = max(1, int(payload.get("steps", 1)))

    logger.info(
        "Sleep job starting",
        extra={"job_id": str(context.job_id), "duration": duration},
    )

    for step in range(1, steps + 1):
        await asyncio.sleep(duration / steps)
        await context.report_progress(step * 100 // steps)

    return JobResult(
        success=True,
        output={"slept_for": duration},
    )
