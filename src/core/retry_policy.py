"""
Shared exponential backoff policy for outbound calls and job requeues.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from src.core.config import settings
from src.core.errors import RetryableError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Exponential backoff with symmetric jitter, capped at `max_delay`."""

    max_attempts: int = 4
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = "Retry policy requires max_attempts >= 1"
            raise ValueError(msg)
        if self.initial_delay < 0 or self.max_delay <= 0:
            msg = "Retry policy delays must be non-negative with a positive cap"
            raise ValueError(msg)
        if self.multiplier < 1:
            msg = "Retry policy requires multiplier >= 1"
            raise ValueError(msg)
        if not 0 <= self.jitter < 1:
            msg = "Retry policy jitter must be in [0, 1)"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            initial_delay=settings.RETRY_INITIAL_DELAY_SECONDS,
            multiplier=settings.RETRY_MULTIPLIER,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER,
        )

    def base_delay(self, attempt: int) -> float:
        """Unjittered delay before retry number `attempt` (0-based)."""
        return min(self.initial_delay * self.multiplier ** max(0, attempt), self.max_delay)

    def delay(self, attempt: int, *, rng: random.Random | None = None) -> float:
        base = self.base_delay(attempt)
        spread = (rng or random).uniform(-self.jitter, self.jitter)
        return max(0.0, min(base * (1.0 + spread), self.max_delay))

    def delay_with_hint(
        self,
        attempt: int,
        retry_after: float | None,
        *,
        rng: random.Random | None = None,
    ) -> float:
        """Honor a provider retry-after hint without exceeding the cap."""
        computed = self.delay(attempt, rng=rng)
        if retry_after is None:
            return computed
        return max(computed, min(retry_after, self.max_delay))

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        operation: str,
        on_failure: Callable[[Exception], None] | None = None,
    ) -> T:
        """Run `call`, retrying `RetryableError` until attempts are exhausted."""
        for attempt in range(self.max_attempts):
            try:
                return await call()
            except RetryableError as exc:
                if on_failure is not None:
                    on_failure(exc)
                if attempt + 1 >= self.max_attempts:
                    raise
                delay = self.delay_with_hint(attempt, exc.retry_after)
                logger.warning(
                    "Retry scheduled",
                    operation=operation,
                    reason=exc.reason.value,
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    delay_seconds=round(delay, 3),
                )
                await asyncio.sleep(delay)

        msg = "unreachable retry loop state"
        raise RuntimeError(msg)
