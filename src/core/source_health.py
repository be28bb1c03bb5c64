"""
Shared per-source health: breaker records, half-open trial leases and rolling
connector call outcomes.

Workers, the API and the CLI each build their own runtime, so this state is
kept outside the breaker objects. `RedisSourceHealth` shares it between
processes and bypasses Redis for a short period when it is unreachable,
serving a local copy meanwhile. `LocalSourceHealth` is that local copy and the
whole backend for single-process deployments.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Protocol, TypeVar

import redis
import structlog

from src.core.config import settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class BreakerRecord:
    """Persisted breaker state; `opened_at` is wall-clock seconds."""

    state: str = "closed"
    calls: int = 0
    failures: int = 0
    opened_at: float | None = None

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state,
            "calls": str(self.calls),
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, str]) -> BreakerRecord:
        opened_at = data.get("opened_at") or ""
        return cls(
            state=data.get("state") or "closed",
            calls=int(data.get("calls") or 0),
            failures=int(data.get("failures") or 0),
            opened_at=float(opened_at) if opened_at else None,
        )


class SourceHealth(Protocol):
    def load(self, source: str) -> BreakerRecord: ...

    def save(self, source: str, record: BreakerRecord) -> None: ...

    def count_call(self, source: str, *, failed: bool) -> BreakerRecord: ...

    def claim_trial(self, source: str, *, ttl_seconds: float) -> bool: ...

    def release_trial(self, source: str) -> None: ...

    def record_outcome(self, source: str, *, success: bool) -> float: ...

    def success_rate(self, source: str) -> float | None: ...


class LocalSourceHealth:
    """In-process source health."""

    def __init__(
        self,
        *,
        window_size: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.window_size = window_size or settings.SOURCE_OUTCOME_WINDOW
        self._clock = clock or time.time
        self._records: dict[str, BreakerRecord] = {}
        self._trial_leases: dict[str, float] = {}
        self._outcomes: dict[str, deque[bool]] = {}

    def load(self, source: str) -> BreakerRecord:
        return self._records.get(source, BreakerRecord())

    def save(self, source: str, record: BreakerRecord) -> None:
        self._records[source] = record

    def count_call(self, source: str, *, failed: bool) -> BreakerRecord:
        current = self.load(source)
        updated = replace(
            current,
            calls=current.calls + 1,
            failures=current.failures + (1 if failed else 0),
        )
        self._records[source] = updated
        return updated

    def claim_trial(self, source: str, *, ttl_seconds: float) -> bool:
        now = self._clock()
        expires_at = self._trial_leases.get(source)
        if expires_at is not None and expires_at > now:
            return False
        self._trial_leases[source] = now + ttl_seconds
        return True

    def release_trial(self, source: str) -> None:
        self._trial_leases.pop(source, None)

    def record_outcome(self, source: str, *, success: bool) -> float:
        window = self._outcomes.get(source)
        if window is None:
            window = deque(maxlen=self.window_size)
            self._outcomes[source] = window
        window.append(success)
        return sum(window) / len(window)

    def success_rate(self, source: str) -> float | None:
        window = self._outcomes.get(source)
        if not window:
            return None
        return sum(window) / len(window)


class RedisSourceHealth:
    """
    Source health shared through Redis.

    Counters are incremented server-side so concurrent workers never lose a
    call, and the half-open trial is a `SET NX` lease that expires on its own
    if the process holding it dies.
    """

    _DEGRADE_RETRY_SECONDS = 30

    def __init__(
        self,
        *,
        prefix: str | None = None,
        redis_url: str | None = None,
        redis_client: redis.Redis[str] | None = None,
        window_size: int | None = None,
        wall_time_fn: Callable[[], float] | None = None,
    ) -> None:
        raw_prefix = settings.SOURCE_HEALTH_REDIS_PREFIX if prefix is None else prefix
        self.prefix = raw_prefix.strip() or "event_ingest:source_health"
        self.redis_url = settings.REDIS_URL if redis_url is None else str(redis_url).strip()
        self.window_size = window_size or settings.SOURCE_OUTCOME_WINDOW
        self._redis_client = redis_client
        self._wall_time_fn = wall_time_fn or time.time
        self._backend_unavailable_until = 0.0
        self._local = LocalSourceHealth(window_size=self.window_size, clock=self._wall_time_fn)

    def build_key(self, kind: str, source: str) -> str:
        return f"{self.prefix}:{kind}:{source}"

    def load(self, source: str) -> BreakerRecord:
        def _load(client: redis.Redis[str]) -> BreakerRecord:
            data = client.hgetall(self.build_key("breaker", source))
            record = BreakerRecord.from_mapping(data) if data else BreakerRecord()
            self._local.save(source, record)
            return record

        return self._run("load", source, _load, lambda: self._local.load(source))

    def save(self, source: str, record: BreakerRecord) -> None:
        self._local.save(source, record)

        def _save(client: redis.Redis[str]) -> None:
            key = self.build_key("breaker", source)
            pipe = client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(key, mapping=record.to_mapping())
            pipe.execute()

        self._run("save", source, _save, lambda: None)

    def count_call(self, source: str, *, failed: bool) -> BreakerRecord:
        def _count(client: redis.Redis[str]) -> BreakerRecord:
            key = self.build_key("breaker", source)
            pipe = client.pipeline(transaction=True)
            pipe.hincrby(key, "calls", 1)
            pipe.hincrby(key, "failures", 1 if failed else 0)
            pipe.hgetall(key)
            record = BreakerRecord.from_mapping(pipe.execute()[-1])
            self._local.save(source, record)
            return record

        return self._run(
            "count_call",
            source,
            _count,
            lambda: self._local.count_call(source, failed=failed),
        )

    def claim_trial(self, source: str, *, ttl_seconds: float) -> bool:
        def _claim(client: redis.Redis[str]) -> bool:
            claimed = client.set(
                self.build_key("trial", source),
                "1",
                nx=True,
                px=max(1, int(ttl_seconds * 1000)),
            )
            return bool(claimed)

        return self._run(
            "claim_trial",
            source,
            _claim,
            lambda: self._local.claim_trial(source, ttl_seconds=ttl_seconds),
        )

    def release_trial(self, source: str) -> None:
        self._local.release_trial(source)
        self._run(
            "release_trial",
            source,
            lambda client: client.delete(self.build_key("trial", source)),
            lambda: 0,
        )

    def record_outcome(self, source: str, *, success: bool) -> float:
        local_rate = self._local.record_outcome(source, success=success)

        def _record(client: redis.Redis[str]) -> float:
            key = self.build_key("outcomes", source)
            pipe = client.pipeline(transaction=True)
            pipe.lpush(key, "1" if success else "0")
            pipe.ltrim(key, 0, self.window_size - 1)
            pipe.lrange(key, 0, -1)
            return _window_rate(pipe.execute()[-1]) or 0.0

        return self._run("record_outcome", source, _record, lambda: local_rate)

    def success_rate(self, source: str) -> float | None:
        return self._run(
            "success_rate",
            source,
            lambda client: _window_rate(client.lrange(self.build_key("outcomes", source), 0, -1)),
            lambda: self._local.success_rate(source),
        )

    def _run(
        self,
        operation: str,
        source: str,
        action: Callable[[redis.Redis[str]], T],
        fallback: Callable[[], T],
    ) -> T:
        now = self._wall_time_fn()
        if now < self._backend_unavailable_until:
            return fallback()
        try:
            return action(self._get_redis_client())
        except redis.RedisError:
            self._backend_unavailable_until = now + self._DEGRADE_RETRY_SECONDS
            logger.warning(
                "Source health backend unavailable; using local state",
                operation=operation,
                source=source,
                retry_after_seconds=self._DEGRADE_RETRY_SECONDS,
            )
            return fallback()

    def _get_redis_client(self) -> redis.Redis[str]:
        if self._redis_client is None:
            self._redis_client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=0.2,
                socket_timeout=0.2,
            )
        return self._redis_client


def _window_rate(values: list[str]) -> float | None:
    if not values:
        return None
    return sum(1 for value in values if value == "1") / len(values)


def build_source_health() -> SourceHealth:
    if settings.SOURCE_HEALTH_BACKEND == "memory":
        return LocalSourceHealth()
    return RedisSourceHealth()
