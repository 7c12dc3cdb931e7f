"""
Rate Limiter - Global dispatch pacing shared by all workers
"""
import asyncio
import logging
from typing import Optional

from batch_engine.core.clock import Clock, SYSTEM_CLOCK
from batch_engine.core.errors import ConfigurationError


class RateLimiter:
    """
    Enforces a minimum spacing between successive dispatch starts

    A single last-granted timestamp guarded by one lock: the throttle is
    global across all workers, since the downstream provider enforces a
    global request budget.
    """

    def __init__(self, min_interval_ms: float = 0.0, clock: Optional[Clock] = None):
        """
        Initialize rate limiter

        Args:
            min_interval_ms: Minimum spacing between grants in milliseconds
            clock: Clock used to read time and sleep (system clock if omitted)
        """
        if min_interval_ms < 0:
            raise ConfigurationError(
                f"min_interval_ms must be >= 0, got {min_interval_ms}"
            )

        self.min_interval_ms = min_interval_ms
        self.clock = clock or SYSTEM_CLOCK
        self.last_granted_at: Optional[float] = None
        self.grants = 0
        self.lock = asyncio.Lock()
        self.logger = logging.getLogger("batch_engine.rate_limiter")

    @property
    def min_interval(self) -> float:
        """Minimum spacing in seconds"""
        return self.min_interval_ms / 1000.0

    async def await_slot(self) -> float:
        """
        Wait until the caller may dispatch

        Blocks until at least min_interval_ms has elapsed since the last
        grant to any worker.

        Returns:
            Clock time at which the slot was granted
        """
        async with self.lock:
            now = self.clock.now()
            if self.last_granted_at is not None:
                # Loop: a sleep may return marginally early
                while True:
                    wait = self.last_granted_at + self.min_interval - now
                    if wait <= 0:
                        break
                    self.logger.debug(f"Rate limit active, waiting {wait * 1000:.0f}ms")
                    await self.clock.sleep(wait)
                    now = self.clock.now()

            self.last_granted_at = now
            self.grants += 1
            return now

    def get_status(self) -> dict:
        """
        Get current limiter status

        Returns:
            Status dictionary
        """
        return {
            'min_interval_ms': self.min_interval_ms,
            'grants': self.grants,
            'last_granted_at': self.last_granted_at,
        }

