"""Process-wide cooldown gate for Productive API calls.

Every request against the Productive API first awaits the gate. Any failure
observed by any caller (any job, any concurrent fetch) records the error
time, and the gate then holds every subsequent request until the cooldown
window has passed. Productive rate limits per organization, so one shared
clock is enough.
"""

import asyncio
import logging
import math
import threading
import time
from typing import Callable, Optional

from config import settings

logger = logging.getLogger(__name__)

LogSink = Callable[[str, str], None]


class CooldownGate:
    """Shared backoff clock: ``mark_error()`` arms it, ``wait()`` honours it."""

    def __init__(
        self,
        cooldown_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else settings.cooldown_seconds
        )
        self._clock = clock
        self._last_error_time: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def last_error_time(self) -> Optional[float]:
        with self._lock:
            return self._last_error_time

    def mark_error(self) -> None:
        """Record that an upstream call just failed."""
        with self._lock:
            self._last_error_time = self._clock()

    def remaining(self) -> float:
        """Seconds left before requests may proceed (0 when open)."""
        with self._lock:
            last_error = self._last_error_time
        if last_error is None:
            return 0.0
        elapsed = self._clock() - last_error
        if elapsed >= self.cooldown_seconds:
            return 0.0
        return self.cooldown_seconds - elapsed

    async def wait(self, log: Optional[LogSink] = None) -> float:
        """Sleep out the remaining cooldown, if any. Returns seconds slept.

        Re-checks after every sleep: an error recorded meanwhile extends the window.
        """
        slept = 0.0
        while True:
            remaining = self.remaining()
            if remaining <= 0:
                return slept

            message = f"Cooling down: waiting {math.ceil(remaining)}s before retry..."
            if log:
                log(message, "warning")
            else:
                logger.warning(message)
            await asyncio.sleep(remaining)
            slept += remaining

    def reset(self) -> None:
        with self._lock:
            self._last_error_time = None


# Global gate shared by every Productive client in the process
cooldown_gate = CooldownGate()
