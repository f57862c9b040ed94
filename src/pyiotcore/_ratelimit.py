"""Periodic gate bounding how often publishes reach the transport."""

from __future__ import annotations

import asyncio


class RateGate:
    """Releases one waiter per tick, in arrival order.

    The first tick is available immediately; each following tick becomes
    available ``interval`` seconds after the previous one was taken. A
    waiter cancelled while queued does not consume a tick.
    """

    def __init__(self, interval: float) -> None:
        self._interval = max(0.0, float(interval))
        self._lock = asyncio.Lock()
        self._next_tick: float | None = None

    @property
    def interval(self) -> float:
        return self._interval

    async def wait(self) -> None:
        """Block until the next tick is available and take it."""
        async with self._lock:
            loop = asyncio.get_running_loop()
            if self._next_tick is not None:
                delay = self._next_tick - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
            self._next_tick = loop.time() + self._interval
