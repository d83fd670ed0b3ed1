"""
Shared rate-limit cooldown.

One gate is shared by the batch dispatcher and the debounced settings write,
so a single throttling rejection pauses every outbound path at once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class CooldownGate:
    """Time-based suppression window opened by a rate-limit rejection.

    Example:
        >>> gate = CooldownGate(60.0)
        >>> gate.trip()
        >>> gate.active
        True
        >>> await gate.wait()  # returns once the window has passed
    """

    def __init__(self, duration: float, clock: Callable[[], float] | None = None) -> None:
        self.duration = duration
        self._clock = clock or time.monotonic
        self._until = 0.0
        self._trips = 0

    @property
    def active(self) -> bool:
        return self.remaining() > 0

    @property
    def trips(self) -> int:
        return self._trips

    def remaining(self) -> float:
        """Seconds until dispatch may resume (0 when open)."""
        return max(0.0, self._until - self._clock())

    def trip(self) -> None:
        """Start (or restart) the cooldown window."""
        self._until = self._clock() + self.duration
        self._trips += 1
        logger.warning(
            "Remote rate limit hit, pausing outbound writes",
            extra={"cooldown_seconds": self.duration, "trips": self._trips},
        )

    def reset(self) -> None:
        self._until = 0.0

    async def wait(self) -> None:
        """Sleep until the window has passed (re-checks if tripped again)."""
        while True:
            remaining = self.remaining()
            if remaining <= 0:
                return
            await asyncio.sleep(remaining)
