"""Sliding-window call-rate backpressure."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600.0
MINUTE_SECONDS = 60.0
_MAX_POLL_SECONDS = 5.0
_SLOT_MARGIN_SECONDS = 0.1


class RateLimiter:
    """Admit at most ``max_calls_per_hour`` calls in any trailing hour.

    Parameters
    ----------
    max_calls_per_hour:
        Hourly call ceiling.
    max_calls_per_minute:
        Optional burst ceiling over a trailing minute; ``None`` disables it.
    clock:
        Monotonic time source in seconds.
    sleep:
        Blocking sleep used by :meth:`wait_and_acquire`.
    """

    def __init__(
        self,
        max_calls_per_hour: int,
        *,
        max_calls_per_minute: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls_per_hour < 1:
            raise ValueError("max_calls_per_hour must be >= 1")
        if max_calls_per_minute is not None and max_calls_per_minute < 1:
            raise ValueError("max_calls_per_minute must be >= 1")
        self.max_calls_per_hour = max_calls_per_hour
        self.max_calls_per_minute = max_calls_per_minute
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()

    def _evict(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        while self._calls and self._calls[0] < cutoff:
            self._calls.popleft()

    def _calls_in_last_minute(self, now: float) -> int:
        cutoff = now - MINUTE_SECONDS
        return sum(1 for ts in self._calls if ts >= cutoff)

    def can_make_call(self) -> bool:
        now = self._clock()
        self._evict(now)
        if len(self._calls) >= self.max_calls_per_hour:
            return False
        if self.max_calls_per_minute is not None:
            return self._calls_in_last_minute(now) < self.max_calls_per_minute
        return True

    def record_call(self) -> None:
        self._calls.append(self._clock())

    def try_acquire(self) -> bool:
        """Record a call and return True if one is admissible right now."""
        if not self.can_make_call():
            return False
        self.record_call()
        return True

    def wait_time(self) -> float:
        """Seconds until the next slot frees, ``0.0`` when one is free now."""
        now = self._clock()
        self._evict(now)
        waits = [0.0]
        if len(self._calls) >= self.max_calls_per_hour:
            waits.append(self._calls[0] + WINDOW_SECONDS - now + _SLOT_MARGIN_SECONDS)
        if self.max_calls_per_minute is not None:
            recent = [ts for ts in self._calls if ts >= now - MINUTE_SECONDS]
            if len(recent) >= self.max_calls_per_minute:
                waits.append(recent[0] + MINUTE_SECONDS - now + _SLOT_MARGIN_SECONDS)
        return max(waits)

    def wait_and_acquire(self, max_wait_seconds: float) -> bool:
        """Sleep in bounded steps until a slot frees or *max_wait_seconds* elapse.

        Returns False without recording a call when the wait budget runs out.
        """
        deadline = self._clock() + max(0.0, max_wait_seconds)
        while True:
            if self.try_acquire():
                return True
            remaining = deadline - self._clock()
            wait = self.wait_time()
            if remaining <= 0 or wait > remaining:
                logger.warning(
                    "Rate limit reached (%d/hour); next slot in %.0fs exceeds wait budget",
                    self.max_calls_per_hour,
                    wait,
                )
                return False
            self._sleep(min(wait, _MAX_POLL_SECONDS, remaining))

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        self._evict(now)
        used = len(self._calls)
        return {
            "calls_this_hour": used,
            "max_calls_per_hour": self.max_calls_per_hour,
            "remaining": max(0, self.max_calls_per_hour - used),
            "calls_this_minute": self._calls_in_last_minute(now),
        }

    def format_stats(self) -> str:
        s = self.stats()
        return f"{s['calls_this_hour']}/{s['max_calls_per_hour']} calls this hour"
