import math
import time
from typing import Dict, List, Optional

from constants import (
    PROCTOR_RATE_LIMIT_MAX,
    PROCTOR_RATE_LIMIT_WINDOW_SECONDS,
    SUBMIT_RATE_LIMIT_MAX,
    SUBMIT_RATE_LIMIT_WINDOW_SECONDS,
)
from error_utils import RateLimitedError


class SlidingWindowRateLimiter:
    """
    Per-actor request budget over a rolling window, kept in process memory.
    Over-budget requests are rejected, never queued.
    """

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._storage: Dict[str, List[float]] = {}
        self._last_sweep = 0.0

    def _sweep(self, current_time: float) -> None:
        """Drop keys whose newest request has left the window."""
        expired = [k for k, ts in self._storage.items() if not ts or current_time - ts[-1] >= self.window_seconds]
        for key in expired:
            del self._storage[key]
        self._last_sweep = current_time

    def check(self, key: str, now: Optional[float] = None) -> None:
        current_time = time.time() if now is None else now
        if current_time - self._last_sweep >= self.window_seconds:
            self._sweep(current_time)

        requests = [t for t in self._storage.get(key, []) if current_time - t < self.window_seconds]

        if len(requests) >= self.max_requests:
            self._storage[key] = requests
            retry_after = max(1, math.ceil(self.window_seconds - (current_time - requests[0])))
            raise RateLimitedError("Rate limit exceeded. Too many requests.", retry_after=retry_after)

        requests.append(current_time)
        self._storage[key] = requests

    def tracked_keys(self) -> int:
        return len(self._storage)

    def reset(self) -> None:
        self._storage.clear()
        self._last_sweep = 0.0


# Process-wide limiters used by the attempt endpoints
submit_limiter = SlidingWindowRateLimiter(SUBMIT_RATE_LIMIT_MAX, SUBMIT_RATE_LIMIT_WINDOW_SECONDS)
proctor_limiter = SlidingWindowRateLimiter(PROCTOR_RATE_LIMIT_MAX, PROCTOR_RATE_LIMIT_WINDOW_SECONDS)
