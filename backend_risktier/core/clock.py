"""
Time source and scheduler used by the ledger client, rate limiter, cache, and commit pipeline.

Everything that reads wall-clock time or waits between attempts goes through
a Clock so attempt counts, delays, and 24h windows can be tested without
real sleeping.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Wall-clock reads (Unix milliseconds) and cooperative sleeps."""

    def now_ms(self) -> int:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Real clock: time.time() and asyncio.sleep()."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class FakeClock:
    """
    Manual clock for tests and simulations.

    sleep() advances the clock instead of waiting and records each delay,
    then yields once to the event loop so other tasks can run.
    """

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now_ms = int(start_ms)
        self.sleeps: list[float] = []

    def now_ms(self) -> int:
        return self._now_ms

    def advance(self, seconds: float) -> None:
        self._now_ms += int(seconds * 1000)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)
