"""
Trailing-edge debounce timer.

N triggers inside the window run the action once, after the window has been
quiet for the full delay. The action reads current state when it runs, so
the single call carries the latest value.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Action = Callable[[], Any]


class Debouncer:
    """Collapse bursts of triggers into one action call.

    Example:
        >>> debouncer = Debouncer(5.0, push_settings, name="settings")
        >>> for _ in range(10):
        ...     debouncer.trigger()
        >>> # push_settings runs once, 5 s after the last trigger
    """

    def __init__(self, delay: float, action: Action, name: str = "debounce") -> None:
        self.delay = delay
        self.action = action
        self.name = name
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._closed = False
        self._fired = 0

    @property
    def pending(self) -> bool:
        """Whether a trigger is waiting for its window to pass."""
        return self._handle is not None

    @property
    def fired(self) -> int:
        return self._fired

    def trigger(self, delay: float | None = None) -> None:
        """Start or restart the window.

        Args:
            delay: Override for this window (used to wait out a cooldown)
        """
        if self._closed:
            return
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay if delay is None else delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._fired += 1
        result = self.action()
        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result)
            self._task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Debounced action failed: {error}",
                extra={"debouncer": self.name},
                exc_info=error,
            )

    def cancel(self) -> bool:
        """Drop a waiting trigger.

        Returns:
            True if a trigger was pending
        """
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    async def close(self) -> None:
        """Cancel the timer and any running action. Nothing fires afterwards."""
        self._closed = True
        self.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
