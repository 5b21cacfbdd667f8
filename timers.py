"""Timer and clock implementations backed by the asyncio event loop."""

from __future__ import annotations

import asyncio
import inspect
import itertools
from typing import Any, Callable, Optional


class LoopTimer:
    """Schedules callbacks on an asyncio loop. Delays are in milliseconds."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._get_loop().call_later(max(delay, 0.0) / 1000.0, callback)

    def now(self) -> float:
        return self._get_loop().time() * 1000.0


class LogicalClock:
    """Monotonic integer clock, independent of wall time."""

    def __init__(self, start: int = 0) -> None:
        self._counter = itertools.count(start + 1)

    def __call__(self) -> int:
        return next(self._counter)


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
