"""
Per-source async token-bucket rate limiting for outbound requests.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(slots=True)
class _Bucket:
    capacity: float
    refill_per_second: float
    tokens: float
    updated_at: float


class TokenBucketRateLimiter:
    """
    Allows `requests` calls per `window_seconds` for each key.

    Token accounting is done without awaiting, so concurrent callers on one
    event loop never hold a lock while sleeping.
    """

    def __init__(
        self,
        requests: int = 60,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if requests <= 0:
            msg = "requests must be > 0"
            raise ValueError(msg)
        if window_seconds <= 0:
            msg = "window_seconds must be > 0"
            raise ValueError(msg)
        self._default_requests = requests
        self._default_window = window_seconds
        self._clock = clock or time.monotonic
        self._buckets: dict[str, _Bucket] = {}

    def configure(self, key: str, *, requests: int, window_seconds: float) -> None:
        """Set a key-specific budget; a new or changed bucket starts full."""
        if requests <= 0 or window_seconds <= 0:
            msg = "requests and window_seconds must be > 0"
            raise ValueError(msg)
        current = self._buckets.get(key)
        refill_per_second = requests / window_seconds
        if (
            current is not None
            and current.capacity == float(requests)
            and current.refill_per_second == refill_per_second
        ):
            return
        self._buckets[key] = _Bucket(
            capacity=float(requests),
            refill_per_second=refill_per_second,
            tokens=float(requests),
            updated_at=self._clock(),
        )

    def try_acquire(self, key: str) -> float:
        """
        Take one token if available.

        Returns 0.0 on success, otherwise the seconds until a token is due.
        """
        bucket = self._bucket(key)
        now = self._clock()
        elapsed = max(0.0, now - bucket.updated_at)
        bucket.tokens = min(bucket.capacity, bucket.tokens + elapsed * bucket.refill_per_second)
        bucket.updated_at = now
        if bucket.tokens >= 1.0:
            bucket.tokens -= 1.0
            return 0.0
        return (1.0 - bucket.tokens) / bucket.refill_per_second

    async def acquire(self, key: str) -> None:
        """Wait until a token is available for `key`, then take it."""
        while True:
            wait_seconds = self.try_acquire(key)
            if wait_seconds <= 0:
                return
            await asyncio.sleep(wait_seconds)

    def available(self, key: str) -> float:
        bucket = self._bucket(key)
        elapsed = max(0.0, self._clock() - bucket.updated_at)
        return min(bucket.capacity, bucket.tokens + elapsed * bucket.refill_per_second)

    def _bucket(self, key: str) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(
                capacity=float(self._default_requests),
                refill_per_second=self._default_requests / self._default_window,
                tokens=float(self._default_requests),
                updated_at=self._clock(),
            )
            self._buckets[key] = bucket
        return bucket
