from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


class CallScheduler:
    """
    Process-wide throttle for outbound Pipedrive calls.

    Admission is FIFO by submission: a call waits for a free concurrency slot and
    for `min_time_ms` to pass since the previous dispatch, then runs. Completion
    order is whatever the calls take. Shared by all sessions since it protects
    the account-wide upstream limit, not a per-tenant one. No retries.
    """

    def __init__(self, min_time_ms: float = 250, max_concurrent: int = 2) -> None:
        if int(max_concurrent) < 1:
            raise ValueError("max_concurrent must be >= 1")
        if float(min_time_ms) < 0:
            raise ValueError("min_time_ms must be >= 0")
        self._min_interval = float(min_time_ms) / 1000.0
        self._max_concurrent = int(max_concurrent)
        self._admission = asyncio.Lock()
        self._slots = asyncio.Semaphore(self._max_concurrent)
        self._last_dispatch: Optional[float] = None
        self._running = 0

    @property
    def min_interval(self) -> float:
        return self._min_interval

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def running(self) -> int:
        return self._running

    async def _admit(self) -> None:
        # the admission lock is held while waiting, so later submissions queue behind
        async with self._admission:
            await self._slots.acquire()
            try:
                if self._last_dispatch is not None:
                    delay = self._last_dispatch + self._min_interval - time.monotonic()
                    if delay > 0:
                        await asyncio.sleep(delay)
            except BaseException:
                self._slots.release()
                raise
            self._last_dispatch = time.monotonic()

    async def schedule(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        await self._admit()
        self._running += 1
        try:
            return await fn(*args, **kwargs)
        finally:
            self._running -= 1
            self._slots.release()
