"""Sliding-window rate gate for the serial dispatch path.

Two constraints are composed: at most ``max_requests`` dispatches inside any
``window_s`` interval, and at least ``min_interval_s`` between consecutive
dispatches. Both clock and sleep are injectable so the gate can be driven by
a fake clock in tests.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
import logging
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    """Ascending dispatch timestamps bounded by a time window and a count."""

    window_s: float = 60.0
    max_requests: int = 12
    _stamps: deque[float] = field(default_factory=deque, init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate window bounds."""
        if self.window_s <= 0:
            raise ValueError("RateWindow.window_s must be > 0")
        if self.max_requests < 1:
            raise ValueError("RateWindow.max_requests must be >= 1")

    def prune(self, now: float) -> None:
        """Drop timestamps that have left the window."""
        while self._stamps and now - self._stamps[0] >= self.window_s:
            self._stamps.popleft()

    def record(self, now: float) -> None:
        """Append a dispatch timestamp."""
        self._stamps.append(now)

    def usage(self, now: float) -> int:
        """Number of dispatches currently inside the window."""
        self.prune(now)
        return len(self._stamps)

    def time_until_slot(self, now: float) -> float:
        """Seconds until one more dispatch fits inside the window."""
        self.prune(now)
        if len(self._stamps) < self.max_requests:
            return 0.0
        return max(0.0, self._stamps[0] + self.window_s - now)

    @property
    def last(self) -> float | None:
        """Most recent dispatch timestamp, if any."""
        return self._stamps[-1] if self._stamps else None


class RateGate:
    """Composes a RateWindow with a minimum spacing between dispatches."""

    def __init__(
        self,
        *,
        window_s: float = 60.0,
        max_requests: int = 12,
        min_interval_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Create a gate; ``min_interval_s`` of 0 disables spacing."""
        if min_interval_s < 0:
            raise ValueError("RateGate.min_interval_s must be >= 0")
        self.window = RateWindow(window_s=window_s, max_requests=max_requests)
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.dispatched = 0

    async def acquire(self) -> float:
        """Wait until a dispatch is allowed, record it, and return the wait applied."""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                wait = self.window.time_until_slot(now)
                if wait <= 0 and self.window.last is not None:
                    wait = max(0.0, self.window.last + self.min_interval_s - now)
                if wait <= 0:
                    break
                logger.debug("Rate gate waiting %.2fs", wait)
                await self._sleep(wait)
                waited += wait

            self.window.record(now)
            self.dispatched += 1
        return waited

    def usage(self) -> int:
        """Dispatches inside the current window."""
        return self.window.usage(self._clock())
