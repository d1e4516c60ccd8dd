"""Token bucket used for per-user bandwidth limits."""

from __future__ import annotations

import math
import threading
import time
from typing import Callable


class TokenBucket:
    """A bucket that refills ``quantum`` tokens every ``fill_interval`` seconds.

    The bucket starts full and never holds more than ``capacity`` tokens.
    Refills happen in whole ticks measured from the bucket's creation.
    """

    def __init__(
        self,
        capacity: int,
        quantum: int | None = None,
        fill_interval: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if quantum is None:
            quantum = capacity
        if capacity <= 0:
            raise ValueError("token bucket capacity must be positive")
        if quantum <= 0:
            raise ValueError("token bucket quantum must be positive")
        if fill_interval <= 0:
            raise ValueError("token bucket fill interval must be positive")
        self.capacity = capacity
        self.quantum = quantum
        self.fill_interval = fill_interval
        self._clock = clock
        self._sleep = sleep
        self._start = clock()
        self._latest_tick = 0
        self._tokens = capacity
        self._lock = threading.Lock()

    def _current_tick(self, now: float) -> int:
        return int((now - self._start) // self.fill_interval)

    def _adjust(self, tick: int) -> None:
        last_tick = self._latest_tick
        self._latest_tick = tick
        if self._tokens >= self.capacity:
            return
        self._tokens = min(self._tokens + (tick - last_tick) * self.quantum, self.capacity)

    def available(self) -> int:
        """Tokens available now; negative while a wait is outstanding."""
        with self._lock:
            self._adjust(self._current_tick(self._clock()))
            return self._tokens

    def take_available(self, count: int) -> int:
        """Take up to ``count`` tokens without waiting; return how many were taken."""
        if count <= 0:
            return 0
        with self._lock:
            self._adjust(self._current_tick(self._clock()))
            if self._tokens <= 0:
                return 0
            taken = min(count, self._tokens)
            self._tokens -= taken
            return taken

    def wait(self, count: int) -> float:
        """Take ``count`` tokens, sleeping until they are due; return the time slept."""
        if count <= 0:
            return 0.0
        with self._lock:
            now = self._clock()
            tick = self._current_tick(now)
            self._adjust(tick)
            remaining = self._tokens - count
            self._tokens = remaining
            if remaining >= 0:
                return 0.0
            end_tick = tick + math.ceil(-remaining / self.quantum)
            delay = self._start + end_tick * self.fill_interval - now
        if delay > 0:
            self._sleep(delay)
            return delay
        return 0.0