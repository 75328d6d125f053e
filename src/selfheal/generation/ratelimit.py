"""Token-bucket limiter owned by a single generator instance."""

from __future__ import annotations

import threading
import time
from typing import Callable

from ..errors import RateLimitError
from ..telemetry import emit_event


class TokenBucket:
    """``capacity`` requests per ``window`` seconds.

    The bucket refills itself on its own tick: whenever a full window has
    elapsed since the current window opened, the window advances and the
    bucket is topped back up to capacity. An empty bucket raises
    :class:`RateLimitError` immediately instead of blocking.
    """

    def __init__(
        self,
        capacity: int,
        window: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self._capacity = capacity
        self._window = window
        self._clock = clock
        self._tokens = capacity
        self._window_started = clock()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def _tick(self, now: float) -> None:
        elapsed = now - self._window_started
        if elapsed >= self._window:
            self._window_started += (elapsed // self._window) * self._window
            self._tokens = self._capacity

    def available(self) -> int:
        with self._lock:
            self._tick(self._clock())
            return self._tokens

    def try_acquire(self, tokens: int = 1) -> None:
        with self._lock:
            now = self._clock()
            self._tick(now)
            if self._tokens < tokens:
                retry_after = max(0.0, self._window - (now - self._window_started))
                emit_event("rate_limited", capacity=self._capacity, retry_after=round(retry_after, 3))
                raise RateLimitError(
                    f"Rate limit of {self._capacity} request(s) per {self._window:g}s exceeded",
                    retry_after=retry_after,
                    details={"capacity": self._capacity, "window": self._window},
                )
            self._tokens -= tokens


__all__ = ["TokenBucket"]
