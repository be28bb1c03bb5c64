"""
Per-source circuit breaker (closed / open / half-open).

The breaker keeps no state of its own: counters, `opened_at` and the trial
lease live in a `SourceHealth` backend, so every runtime guarding the same
source (workers, API, CLI) sees the same circuit.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum

import structlog

from src.core.config import settings
from src.core.errors import CircuitOpenError
from src.core.observability import record_circuit_state
from src.core.source_health import BreakerRecord, LocalSourceHealth, SourceHealth

logger = structlog.get_logger(__name__)


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True, frozen=True)
class CircuitBreakerConfig:
    min_calls: int = 10
    failure_rate_threshold: float = 0.5
    cooldown_seconds: float = 60.0

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        return cls(
            min_calls=settings.CIRCUIT_BREAKER_MIN_CALLS,
            failure_rate_threshold=settings.CIRCUIT_BREAKER_FAILURE_RATE,
            cooldown_seconds=settings.CIRCUIT_BREAKER_COOLDOWN_SECONDS,
        )


def _failure_rate(record: BreakerRecord) -> float:
    if record.calls == 0:
        return 0.0
    return record.failures / record.calls


class CircuitBreaker:
    """Failure-isolation state machine guarding one source."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        health: SourceHealth | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig.from_settings()
        self._clock = clock or time.time
        self.health = health or LocalSourceHealth(clock=self._clock)
        record_circuit_state(source=self.name, state=self.state.value)

    @property
    def state(self) -> CircuitState:
        record = self.health.load(self.name)
        state = CircuitState(record.state)
        if state == CircuitState.OPEN and self._remaining_cooldown(record) <= 0:
            return CircuitState.HALF_OPEN
        return state

    @property
    def calls(self) -> int:
        return self.health.load(self.name).calls

    @property
    def failures(self) -> int:
        return self.health.load(self.name).failures

    @property
    def failure_rate(self) -> float:
        return _failure_rate(self.health.load(self.name))

    def before_call(self) -> bool:
        """
        Admit a call or raise `CircuitOpenError`.

        Returns True when the call was admitted as the single half-open trial;
        such a caller must end with `record_success`, `record_failure` or
        `release_trial`.
        """
        record = self.health.load(self.name)
        state = CircuitState(record.state)
        if state == CircuitState.CLOSED:
            return False
        if state == CircuitState.OPEN:
            remaining = self._remaining_cooldown(record)
            if remaining > 0:
                raise CircuitOpenError(self.name, retry_in=remaining)
        # The lease outlives a crashed trial caller by at most one cooldown.
        if not self.health.claim_trial(self.name, ttl_seconds=self.config.cooldown_seconds):
            raise CircuitOpenError(self.name)
        if state == CircuitState.OPEN:
            self._save(replace(record, state=CircuitState.HALF_OPEN.value), previous=state)
        return True

    def record_success(self) -> None:
        record = self.health.load(self.name)
        state = CircuitState(record.state)
        if state == CircuitState.CLOSED:
            self.health.count_call(self.name, failed=False)
        elif state == CircuitState.HALF_OPEN:
            self.health.release_trial(self.name)
            self._save(BreakerRecord(), previous=state)

    def record_failure(self) -> None:
        record = self.health.load(self.name)
        state = CircuitState(record.state)
        if state == CircuitState.HALF_OPEN:
            self.health.release_trial(self.name)
            self._open(record, previous=state)
            return
        if state != CircuitState.CLOSED:
            return
        record = self.health.count_call(self.name, failed=True)
        if (
            record.calls >= self.config.min_calls
            and _failure_rate(record) >= self.config.failure_rate_threshold
        ):
            self._open(record, previous=state)

    def release_trial(self) -> None:
        """Give back a half-open trial slot whose call never reached the source."""
        self.health.release_trial(self.name)

    def snapshot(self) -> dict[str, object]:
        record = self.health.load(self.name)
        return {
            "state": self.state.value,
            "calls": record.calls,
            "failures": record.failures,
            "failure_rate": round(_failure_rate(record), 4),
            "opened_at": record.opened_at,
        }

    def _open(self, record: BreakerRecord, *, previous: CircuitState) -> None:
        self._save(
            replace(record, state=CircuitState.OPEN.value, opened_at=self._clock()),
            previous=previous,
        )
        logger.warning(
            "Circuit opened",
            source=self.name,
            calls=record.calls,
            failures=record.failures,
            cooldown_seconds=self.config.cooldown_seconds,
        )

    def _save(self, record: BreakerRecord, *, previous: CircuitState) -> None:
        self.health.save(self.name, record)
        if record.state == previous.value:
            return
        logger.info(
            "Circuit state changed",
            source=self.name,
            from_state=previous.value,
            to_state=record.state,
        )
        record_circuit_state(source=self.name, state=record.state)

    def _remaining_cooldown(self, record: BreakerRecord) -> float:
        if record.opened_at is None:
            return 0.0
        return self.config.cooldown_seconds - (self._clock() - record.opened_at)
