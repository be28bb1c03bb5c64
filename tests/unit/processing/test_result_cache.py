from __future__ import annotations

from dataclasses import dataclass, field

import pytest
import redis

from src.processing.result_cache import RedisResultCache, TTLCache, normalize_cache_text, text_hash

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@dataclass(slots=True)
class _FakeRedisClient:
    values: dict[str, str] = field(default_factory=dict)
    ttls: dict[str, int] = field(default_factory=dict)
    fail: bool = False
    calls: int = 0

    def get(self, key: str) -> str | None:
        self.calls += 1
        if self.fail:
            msg = "connection refused"
            raise redis.ConnectionError(msg)
        return self.values.get(key)

    def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        self.calls += 1
        if self.fail:
            msg = "connection refused"
            raise redis.ConnectionError(msg)
        self.values[key] = value
        self.ttls[key] = ttl_seconds
        return True


def test_text_hash_ignores_case_and_whitespace() -> None:
    assert normalize_cache_text("  Jazz\tNight \n") == "jazz night"
    assert text_hash("Jazz Night") == text_hash("jazz   NIGHT")
    assert text_hash("Jazz Night") != text_hash("Jazz Nights")


def test_ttl_cache_expires_entries() -> None:
    clock = FakeClock()
    cache: TTLCache[str] = TTLCache(ttl_seconds=10, max_entries=5, clock=clock)

    cache.set("a", "1")
    clock.now += 9
    assert cache.get("a") == "1"

    clock.now += 1
    assert cache.get("a") is None
    assert len(cache) == 0


def test_ttl_cache_evicts_least_recently_used() -> None:
    cache: TTLCache[int] = TTLCache(ttl_seconds=60, max_entries=2, clock=FakeClock())

    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3

    cache.clear()
    assert len(cache) == 0


def test_ttl_cache_rejects_invalid_bounds() -> None:
    with pytest.raises(ValueError, match="must be > 0"):
        TTLCache(ttl_seconds=0, max_entries=1)


def test_redis_cache_round_trips_json_payloads() -> None:
    client = _FakeRedisClient()
    cache = RedisResultCache(prefix="ingest:test", ttl_seconds=120, redis_client=client)

    cache.set("classifier", "abc", {"categories": ["music"], "confidence": 0.9})

    assert cache.get("classifier", "abc") == {"categories": ["music"], "confidence": 0.9}
    assert client.ttls == {"ingest:test:classifier:v1:abc": 120}
    assert cache.get("classifier", "missing") is None


def test_redis_cache_ignores_non_object_values() -> None:
    client = _FakeRedisClient(values={"ingest:test:classifier:v1:abc": "[1, 2]"})
    cache = RedisResultCache(prefix="ingest:test", ttl_seconds=120, redis_client=client)

    assert cache.get("classifier", "abc") is None


def test_redis_cache_bypasses_backend_for_a_while_after_errors() -> None:
    clock = FakeClock()
    client = _FakeRedisClient(fail=True)
    cache = RedisResultCache(
        prefix="ingest:test",
        ttl_seconds=120,
        redis_client=client,
        wall_time_fn=clock,
    )

    assert cache.get("classifier", "abc") is None
    cache.set("classifier", "abc", {"categories": []})
    assert client.calls == 1

    client.fail = False
    clock.now += 31
    cache.set("classifier", "abc", {"categories": []})

    assert client.calls == 2
    assert cache.get("classifier", "abc") == {"categories": []}
