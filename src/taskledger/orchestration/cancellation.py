"""Cooperative cancellation and timeouts.

Cancellation is an explicit token passed through every phase and checked
at phase boundaries; a running phase is never interrupted. Timeouts race
an awaitable against a timer and raise a distinct error class.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from ..errors import TaskCancelledError, TaskTimeoutError
from ..models import ExecutionPhase


T = TypeVar("T")


class CancellationToken:
    """Caller-held flag checked by the orchestrator between phases."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Task cancelled by user") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self, phase: ExecutionPhase) -> None:
        """Raise TaskCancelledError if cancel() was called."""
        if self._cancelled:
            raise TaskCancelledError(phase=phase.value, reason=self.reason or "Task cancelled by user")


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: Optional[float],
    operation: str,
) -> T:
    """Await with an optional time bound.

    Args:
        awaitable: The operation to run
        timeout_seconds: Bound in seconds (None or 0 = no bound)
        operation: Name used in the error message

    Raises:
        TaskTimeoutError: If the bound is exceeded
    """
    if not timeout_seconds:
        return await awaitable

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise TaskTimeoutError(operation, timeout_seconds) from e
