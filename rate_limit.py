"""
Token-bucket rate limiting, keyed by client address.

Buckets live in process memory only, so with N server processes the
effective limit is N times the configured rate. A bucket that has refilled
to burst is indistinguishable from a new one, so such buckets are swept
once per refill period to keep memory bounded by recently active clients.
"""
import threading
import time
from typing import Callable, Dict, Optional, Tuple

# float refill over 60/R seconds can land a hair under one whole token
EPSILON = 1e-9


class TokenBucketLimiter:
    def __init__(self, rate_per_min: float = 60, burst: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        if rate_per_min <= 0:
            raise ValueError("rate_per_min must be positive")
        self.rate_per_sec = rate_per_min / 60.0
        self.burst = float(burst if burst is not None else rate_per_min)
        self.clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()
        self._refill_period = self.burst / self.rate_per_sec
        self._last_sweep = clock()

    def _level(self, key: str, now: float) -> float:
        tokens, last = self._buckets.get(key, (self.burst, now))
        return min(self.burst, tokens + (now - last) * self.rate_per_sec)

    def _sweep(self, now: float) -> None:
        full = [k for k in self._buckets if self._level(k, now) + EPSILON >= self.burst]
        for k in full:
            del self._buckets[k]
        self._last_sweep = now

    def allow(self, key: str) -> bool:
        """Spend one token for `key`; False (nothing spent) if the bucket is empty."""
        now = self.clock()
        with self._lock:
            if now - self._last_sweep >= self._refill_period:
                self._sweep(now)
            tokens = self._level(key, now)
            if tokens + EPSILON < 1:
                self._buckets[key] = (tokens, now)
                return False
            self._buckets[key] = (max(0.0, tokens - 1), now)
            return True

    def tokens(self, key: str) -> float:
        now = self.clock()
        with self._lock:
            return self._level(key, now)
