"""
Result caches for geocoding and classification lookups.

`TTLCache` is the per-process layer; `RedisResultCache` is an optional
cross-worker layer that bypasses itself for a short period when Redis is
unreachable instead of failing the caller.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Generic, TypeVar

import redis
import structlog

from src.core.config import settings

logger = structlog.get_logger(__name__)

V = TypeVar("V")


def normalize_cache_text(text: str) -> str:
    return " ".join(text.lower().split())


def text_hash(text: str) -> str:
    """Stable hash of whitespace/case-normalized text."""
    return hashlib.sha256(normalize_cache_text(text).encode("utf-8")).hexdigest()


class TTLCache(Generic[V]):
    """Bounded in-memory cache with per-entry expiry and LRU eviction."""

    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if ttl_seconds <= 0 or max_entries <= 0:
            msg = "ttl_seconds and max_entries must be > 0"
            raise ValueError(msg)
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, tuple[float, V]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: V) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


class RedisResultCache:
    """Optional cross-worker JSON cache keyed by namespace + key."""

    _DEGRADE_RETRY_SECONDS = 30

    def __init__(
        self,
        *,
        prefix: str,
        ttl_seconds: int,
        redis_url: str | None = None,
        redis_client: redis.Redis[str] | None = None,
        wall_time_fn: Any | None = None,
    ) -> None:
        self.prefix = prefix.strip() or "event_ingest:cache"
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.redis_url = settings.REDIS_URL if redis_url is None else str(redis_url).strip()
        self._redis_client = redis_client
        self._backend_unavailable_until = 0.0
        self._wall_time_fn = wall_time_fn or time.time

    def build_key(self, namespace: str, key: str) -> str:
        return f"{self.prefix}:{namespace}:v1:{key}"

    def get(self, namespace: str, key: str) -> dict[str, Any] | None:
        now = self._wall_time_fn()
        if now < self._backend_unavailable_until:
            return None
        try:
            value = self._get_redis_client().get(self.build_key(namespace, key))
        except redis.RedisError:
            self._degrade(now, operation="get", namespace=namespace)
            return None
        if not isinstance(value, str) or not value.strip():
            return None
        try:
            decoded = json.loads(value)
        except ValueError:
            return None
        return decoded if isinstance(decoded, dict) else None

    def set(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        now = self._wall_time_fn()
        if now < self._backend_unavailable_until:
            return
        payload = json.dumps(value, ensure_ascii=True, sort_keys=True, separators=(",", ":"))
        try:
            self._get_redis_client().setex(
                self.build_key(namespace, key),
                self.ttl_seconds,
                payload,
            )
        except redis.RedisError:
            self._degrade(now, operation="set", namespace=namespace)

    def _degrade(self, now: float, *, operation: str, namespace: str) -> None:
        self._backend_unavailable_until = now + self._DEGRADE_RETRY_SECONDS
        logger.warning(
            "Result cache backend unavailable; bypassing",
            operation=operation,
            namespace=namespace,
            retry_after_seconds=self._DEGRADE_RETRY_SECONDS,
        )

    def _get_redis_client(self) -> redis.Redis[str]:
        if self._redis_client is None:
            self._redis_client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=0.1,
                socket_timeout=0.1,
            )
        return self._redis_client
