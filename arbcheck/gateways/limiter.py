"""Concurrency cap and call spacing for upstream APIs."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class RateLimiter:
    """Cap in-flight calls and keep a minimum interval between call starts.

    One instance per upstream, built at startup and shared by everything that
    talks to that upstream, so the pacing holds even when callers fan out.
    """

    def __init__(
        self,
        max_concurrent: int = 1,
        min_interval_ms: int = 0,
        name: str = "upstream",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if min_interval_ms < 0:
            raise ValueError("min_interval_ms must be >= 0")
        self.name = name
        self.max_concurrent = max_concurrent
        self.min_interval = min_interval_ms / 1000.0
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._slots = asyncio.Semaphore(max_concurrent)
        self._start_lock = asyncio.Lock()
        self._next_start = 0.0
        self.calls = 0
        self.throttled_sec = 0.0

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` once a slot is free and its start is due."""
        async with self._slots:
            await self._wait_turn()
            return await operation()

    async def _wait_turn(self) -> None:
        async with self._start_lock:
            now = self._clock()
            wait = self._next_start - now
            if wait > 0:
                self.throttled_sec += wait
                await self._sleep(wait)
                now = max(self._clock(), self._next_start)
            self._next_start = now + self.min_interval
            self.calls += 1
