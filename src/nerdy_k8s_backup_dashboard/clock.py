from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import heapq
import itertools
from typing import Protocol

_SETTLE_ITERATIONS = 10


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(tz=UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """Clock whose time only moves when ``advance`` is awaited.

    Sleepers are woken in deadline order, and the event loop is given a few
    turns after each wake-up so the resumed task can run up to its next
    suspension point before the following deadline is considered.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 3, 10, 12, 0, tzinfo=UTC)
        self._sleepers: list[tuple[datetime, int, asyncio.Future[None]]] = []
        self._sequence = itertools.count()

    def now(self) -> datetime:
        return self._now

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, future in self._sleepers if not future.done())

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        deadline = self._now + timedelta(seconds=seconds)
        heapq.heappush(self._sleepers, (deadline, next(self._sequence), future))
        await future

    async def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        target = self._now + timedelta(seconds=seconds)
        await settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self._now = max(self._now, deadline)
            if not future.done():
                future.set_result(None)
            await settle()
        self._now = target


async def settle() -> None:
    """Yield to the event loop until freshly woken tasks reach their next await."""
    for _ in range(_SETTLE_ITERATIONS):
        await asyncio.sleep(0)
