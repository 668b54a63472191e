from __future__ import annotations

import asyncio
import time
from typing import Callable


class AsyncCooldown:
    """
    Async pacing gate: successive `wait()` calls return at least `interval_ms` apart.

    Used to keep outbound calls to third-party APIs under their published rate.
    """

    def __init__(
        self,
        interval_ms: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval_ms = max(0, int(interval_ms))
        self._clock = clock
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    @property
    def interval_s(self) -> float:
        return self.interval_ms / 1000.0

    def ready(self) -> bool:
        return self.interval_ms <= 0 or self._clock() >= self._next_allowed

    async def wait(self) -> None:
        if self.interval_ms <= 0:
            return
        while True:
            async with self._lock:
                now = self._clock()
                if now >= self._next_allowed:
                    self._next_allowed = now + self.interval_s
                    return
                sleep_for = max(0.0, self._next_allowed - now)
            await asyncio.sleep(min(0.25, sleep_for))
