"""
Clock abstraction for the engine

The rate limiter and the retry backoff read time and sleep through a
Clock so tests can drive them without real delays.
"""
import asyncio
import time


class Clock:
    """Monotonic clock in seconds with an async sleep"""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


SYSTEM_CLOCK = Clock()
