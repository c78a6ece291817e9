from __future__ import annotations

import math
import time
from typing import Callable, Dict, Optional, Tuple

# Tests monkeypatch this to freeze time in burst scenarios.
_NOW: Callable[[], float] = time.monotonic


def _now() -> float:
    return _NOW()


class _Bucket:
    __slots__ = ("tokens", "last")

    def __init__(self, capacity: float, now: float) -> None:
        self.tokens = float(capacity)
        self.last = now


class TokenBucketLimiter:
    """
    In-process token bucket keyed by caller identity.

    ``capacity`` tokens are available up front and refill continuously so
    that a full bucket is restored every ``window_ms``. All access happens on
    the event loop thread, so no locking.
    """

    def __init__(self, capacity: int, window_ms: int) -> None:
        if capacity <= 0 or window_ms <= 0:
            raise ValueError("capacity and window_ms must be > 0")
        self.capacity = float(capacity)
        self.window_ms = window_ms
        self.refill_per_s = self.capacity / (window_ms / 1000.0)
        self._buckets: Dict[str, _Bucket] = {}

    def allow(self, key: str, cost: float = 1.0) -> Tuple[bool, Optional[int], float]:
        """
        Try to spend ``cost`` tokens.

        Returns ``(allowed, retry_after_ms, remaining_tokens)``; ``retry_after_ms``
        is None when allowed.
        """
        now = _now()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = _Bucket(self.capacity, now)
        elif now > bucket.last:
            bucket.tokens = min(self.capacity, bucket.tokens + (now - bucket.last) * self.refill_per_s)
            bucket.last = now

        if bucket.tokens >= cost:
            bucket.tokens -= cost
            return True, None, bucket.tokens

        need = cost - bucket.tokens
        retry_after_ms = int(math.ceil(need / self.refill_per_s * 1000.0))
        return False, max(1, retry_after_ms), bucket.tokens

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._buckets.clear()
        else:
            self._buckets.pop(key, None)
