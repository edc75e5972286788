"""Clocks for SLA math and delayed workflow actions.

SystemClock is used in production. ManualClock only moves when advanced,
which makes SLA thresholds and delayed actions deterministic in tests.

Usage:
    clock = ManualClock(datetime(2025, 1, 1, tzinfo=UTC))
    await clock.advance(hours=2)   # wakes every sleeper due by then
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import UTC, datetime, timedelta


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0))


class ManualClock:
    """A clock that only moves when told to.

    sleep() parks the caller until advance() carries the clock past its wake
    time. Sleepers are woken in wake-time order.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 1, tzinfo=UTC)
        self._sleepers: list[tuple[datetime, int, asyncio.Future[None]]] = []
        self._counter = itertools.count()

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        wake_at = self._now + timedelta(seconds=seconds)
        heapq.heappush(self._sleepers, (wake_at, next(self._counter), future))
        await future

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float = 0, *, minutes: float = 0, hours: float = 0) -> None:
        """Move the clock forward and let every sleeper due by then run."""
        self._now += timedelta(seconds=seconds, minutes=minutes, hours=hours)
        while self._sleepers and self._sleepers[0][0] <= self._now:
            _, _, future = heapq.heappop(self._sleepers)
            if not future.done():
                future.set_result(None)
        # Give woken tasks a chance to run to their next await.
        for _ in range(5):
            await asyncio.sleep(0)
