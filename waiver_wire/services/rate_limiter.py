"""
Per-source request admission control.

Two rolling fixed windows (minute and hour) are enforced independently.
Callers are delayed, never rejected.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from waiver_wire.models.config import RateLimitConfig


MINUTE_SECONDS = 60.0
HOUR_SECONDS = 3600.0


class RateLimiter:
    """Rolling-window admission for a single source."""

    def __init__(
        self,
        config: RateLimitConfig,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)

        now = self._clock()
        self.minute_requests = 0
        self.hour_requests = 0
        self.minute_reset_at = now + MINUTE_SECONDS
        self.hour_reset_at = now + HOUR_SECONDS

    def _roll_windows(self, now: float) -> None:
        if now >= self.minute_reset_at:
            self.minute_requests = 0
            self.minute_reset_at = now + MINUTE_SECONDS
        if now >= self.hour_reset_at:
            self.hour_requests = 0
            self.hour_reset_at = now + HOUR_SECONDS

    def _required_wait(self, now: float) -> float:
        """Seconds until both windows have capacity, or 0 if admissible now."""
        wait = 0.0
        if self.minute_requests >= self.config.requests_per_minute:
            wait = max(wait, self.minute_reset_at - now)
        if self.hour_requests >= self.config.requests_per_hour:
            wait = max(wait, self.hour_reset_at - now)
        return wait

    async def admit(self) -> None:
        """Wait until capacity is available in both windows, then reserve one unit."""
        async with self._lock:
            while True:
                now = self._clock()
                self._roll_windows(now)
                wait = self._required_wait(now)
                if wait <= 0:
                    break
                self.logger.info(f"Rate limit reached for {self.name}; waiting {wait:.1f}s")
                await self._sleep(wait)

            self.minute_requests += 1
            self.hour_requests += 1

    def remaining(self) -> Dict[str, int]:
        self._roll_windows(self._clock())
        return {
            'minute': max(0, self.config.requests_per_minute - self.minute_requests),
            'hour': max(0, self.config.requests_per_hour - self.hour_requests),
        }

    def reset_times(self, now: Optional[datetime] = None) -> Dict[str, datetime]:
        wall_now = now or datetime.now()
        mono_now = self._clock()
        return {
            'minute': wall_now + timedelta(seconds=max(0.0, self.minute_reset_at - mono_now)),
            'hour': wall_now + timedelta(seconds=max(0.0, self.hour_reset_at - mono_now)),
        }
