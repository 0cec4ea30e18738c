"""Owned, cancellable scheduled tasks.

Each purpose (reconnect backoff, duplicate-membership recovery, per-link
negotiation deadline) owns exactly one TaskSlot. Scheduling replaces whatever
was pending in the slot, and cancel() is the single call that guarantees
nothing from that slot fires afterwards.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Module-level alias so tests can patch the delay without touching asyncio.
_sleep = asyncio.sleep


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff delay for a zero-based retry attempt.

    Args:
        attempt: Number of retries already scheduled (0 for the first).
        base: Delay of the first retry in seconds.
        cap: Maximum delay in seconds.

    Returns:
        ``min(base * 2**attempt, cap)``

    Examples:
        >>> [backoff_delay(i, 1.0, 10.0) for i in range(5)]
        [1.0, 2.0, 4.0, 8.0, 10.0]
    """
    return min(base * (2**attempt), cap)


class TaskSlot:
    """A single scheduled callback that can be replaced or cancelled.

    Attributes:
        name: Label used in log messages.
        delay: Delay of the currently scheduled callback, if any.
    """

    def __init__(self, name: str):
        self.name = name
        self.delay: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        """Whether a callback is scheduled and has not started running yet."""
        return self._task is not None and not self._task.done()

    def schedule(
        self,
        delay: float,
        callback: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> None:
        """Run ``await callback(*args)`` after ``delay`` seconds.

        Any callback already scheduled in this slot is cancelled first.

        Args:
            delay: Seconds to wait before invoking the callback.
            callback: Coroutine function to invoke.
            *args: Positional arguments for the callback.
        """
        self.cancel()
        self.delay = delay
        self._task = asyncio.get_running_loop().create_task(
            self._run(delay, callback, args)
        )
        logger.debug(f"{self.name}: scheduled in {delay:.2f}s")

    async def _run(self, delay, callback, args):
        await _sleep(delay)
        # Detach before running so the callback may reschedule this slot
        # without cancelling itself.
        self._task = None
        self.delay = None
        try:
            await callback(*args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{self.name}: scheduled callback failed: {e}")

    def cancel(self) -> None:
        """Cancel the scheduled callback, if any. Safe to call repeatedly."""
        task = self._task
        self._task = None
        self.delay = None
        if task is not None and not task.done():
            task.cancel()
            logger.debug(f"{self.name}: cancelled")
