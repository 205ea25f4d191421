"""Fixed-window request limiter placed in front of code issuance."""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class RateLimitInfo:
    allowed: bool
    remaining: int
    limit: int
    retry_after: Optional[int] = None


class FixedWindowRateLimiter:
    """In-process counter per key, reset at each window boundary.

    Checks are synchronous, so concurrent requests on one event loop cannot
    interleave inside `check`.
    """

    def __init__(self, limit: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window_seconds
        self.clock = clock
        self._buckets: Dict[str, tuple[float, int]] = {}

    def check(self, key: str) -> RateLimitInfo:
        """Count one request for `key` and say whether it is allowed."""
        now = self.clock()
        window_start = now - (now % self.window)

        started, count = self._buckets.get(key, (window_start, 0))
        if started < window_start:
            started, count = window_start, 0

        if count >= self.limit:
            retry_after = max(1, int(started + self.window - now))
            return RateLimitInfo(allowed=False, remaining=0, limit=self.limit, retry_after=retry_after)

        count += 1
        self._buckets[key] = (started, count)
        self._evict(window_start)
        return RateLimitInfo(allowed=True, remaining=self.limit - count, limit=self.limit)

    def _evict(self, window_start: float) -> None:
        if len(self._buckets) < 10_000:
            return
        stale = [key for key, (started, _) in self._buckets.items() if started < window_start]
        for key in stale:
            del self._buckets[key]
