from __future__ import annotations

import threading
import time
from typing import Callable


class TokenBucketLimiter:
    """
    Blocking token bucket shared by the worker threads of one adapter.

    ``wait()`` returns once a token is available; callers run on worker
    threads (pollers use ``asyncio.to_thread``) so sleeping here never
    stalls the event loop.
    """

    def __init__(
        self,
        rate_per_minute: int,
        burst_size: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        rate_per_minute = max(1, rate_per_minute)
        burst_size = max(1, burst_size)
        self.rate_per_second = rate_per_minute / 60.0
        self.capacity = float(burst_size)
        self.tokens = float(self.capacity)
        self._clock = clock
        self._sleep = sleep
        self.updated = clock()
        self._lock = threading.Lock()

    def _refill_locked(self) -> None:
        now = self._clock()
        delta = now - self.updated
        if delta <= 0:
            return
        self.tokens = min(self.capacity, self.tokens + delta * self.rate_per_second)
        self.updated = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill_locked()
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return True
            return False

    def wait(self) -> None:
        while True:
            with self._lock:
                self._refill_locked()
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                needed = (1.0 - self.tokens) / self.rate_per_second
            self._sleep(max(needed, 0.05))
