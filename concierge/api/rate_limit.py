"""Sliding-window request limiter keyed by caller identity.

In-memory, per process; resets on restart. All bookkeeping happens without
awaiting, so it is safe under a single event loop without a lock.

Keys are kept in order of their latest recorded hit, so idle callers are
evicted from the front of the map on every check and memory stays bounded
by the number of callers active within one window.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: float


class SlidingWindowRateLimiter:
    def __init__(
        self,
        max_requests: int = 20,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # Insertion order == order of latest recorded hit; deques are never empty
        self._hits: dict[str, deque[float]] = {}

    def __len__(self) -> int:
        return len(self._hits)

    def check(self, key: str) -> RateLimitDecision:
        """Record a request for ``key`` and decide whether it may proceed.

        A rejected request is not counted against the window.
        """
        now = self._clock()
        window_start = now - self.window_seconds
        self._evict_idle(window_start)

        hits = self._hits.get(key) or deque()
        while hits and hits[0] <= window_start:
            hits.popleft()

        if len(hits) >= self.max_requests:
            reset = hits[0] + self.window_seconds - now if hits else self.window_seconds
            logger.warning("Rate limit exceeded for %s (%d/%d)", key, len(hits), self.max_requests)
            return RateLimitDecision(allowed=False, remaining=0, reset_seconds=max(reset, 0.0))

        hits.append(now)
        self._hits.pop(key, None)
        self._hits[key] = hits
        return RateLimitDecision(
            allowed=True,
            remaining=self.max_requests - len(hits),
            reset_seconds=self.window_seconds,
        )

    def _evict_idle(self, window_start: float) -> None:
        while self._hits:
            oldest = next(iter(self._hits))
            if self._hits[oldest][-1] > window_start:
                break
            del self._hits[oldest]
