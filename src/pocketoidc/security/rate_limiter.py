"""In-memory token-bucket rate limiting for the browser-facing and token endpoints.

Two tiers are built from settings when the app starts:
  - login:  authorize + interaction submissions (default 1 req/s, burst 5)
  - token:  token endpoint (default 10 req/s, burst 30)

Buckets are keyed by client IP. A throttled request gets 429 with
``Retry-After``; nothing reaches the provider core.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable

__all__ = ["RateLimiter", "RateLimitInfo"]


class _Bucket:
    """A single token bucket for one client."""

    __slots__ = ("tokens", "last_refill")

    def __init__(self, capacity: float, now: float):
        self.tokens: float = capacity
        self.last_refill: float = now


class RateLimitInfo:
    """Rate limit state returned by ``check()``."""

    __slots__ = ("allowed", "limit", "remaining", "reset_after")

    def __init__(self, allowed: bool, limit: int, remaining: int, reset_after: float):
        self.allowed = allowed
        self.limit = limit
        self.remaining = remaining
        self.reset_after = reset_after

    def headers(self) -> dict[str, str]:
        """Return rate-limit response headers (RFC 6585 style)."""
        h: dict[str, str] = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if not self.allowed:
            h["Retry-After"] = str(max(1, math.ceil(self.reset_after)))
        return h


class RateLimiter:
    """Token-bucket rate limiter keyed by client identifier (IP address).

    Parameters
    ----------
    rate : float
        Tokens added per second.
    capacity : int
        Maximum burst size (bucket capacity).
    max_keys : int
        Once this many clients are tracked, idle buckets are pruned on the next check.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        *,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate = rate
        self.capacity = capacity
        self.max_keys = max_keys
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def allow(self, key: str) -> bool:
        """Return True if the request is allowed, consuming one token."""
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitInfo:
        """Consume a token for *key* and return the resulting limit state."""
        now = self._clock()

        bucket = self._buckets.get(key)
        if bucket is None:
            if len(self._buckets) >= self.max_keys:
                self.cleanup(self.idle_after)
            bucket = self._buckets[key] = _Bucket(self.capacity, now)

        # Refill tokens since last check
        elapsed = now - bucket.last_refill
        bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.rate)
        bucket.last_refill = now

        if bucket.tokens >= 1.0:
            bucket.tokens -= 1.0
            reset_after = (self.capacity - bucket.tokens) / self.rate
            return RateLimitInfo(True, self.capacity, int(bucket.tokens), reset_after)

        # Denied: time until the next whole token
        reset_after = (1.0 - bucket.tokens) / self.rate
        return RateLimitInfo(False, self.capacity, 0, reset_after)

    @property
    def idle_after(self) -> float:
        """Seconds after which an untouched bucket is full again and can be forgotten."""
        return self.capacity / self.rate

    def cleanup(self, max_age: float = 3600.0) -> int:
        """Remove entries idle for more than *max_age* seconds. Returns count removed."""
        now = self._clock()
        stale = [k for k, b in self._buckets.items() if now - b.last_refill > max_age]
        for k in stale:
            del self._buckets[k]
        return len(stale)
