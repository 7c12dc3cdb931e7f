"""
Shared fixtures for batch engine tests
"""
import asyncio
from typing import List

import pytest

from batch_engine.core.clock import Clock


class FakeClock(Clock):
    """Clock whose sleeps advance virtual time instantly"""

    def __init__(self, start: float = 1000.0):
        self.time = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.time

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.time += seconds
        # Still yield so other workers can run
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.time += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()
