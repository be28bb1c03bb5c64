"""
Guarded access to source connectors.

Every connector call goes through the source's circuit breaker, token bucket
and the shared retry policy; pagination is capped by max pages / max items.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import structlog

from src.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from src.core.errors import IngestionError, SourceRegistrationError
from src.core.observability import record_source_call
from src.core.retry_policy import RetryPolicy
from src.core.source_health import LocalSourceHealth, SourceHealth
from src.ingestion.connector_registry import ConnectorRegistry
from src.ingestion.source_connector import DiscoveryPage, SearchDescriptor

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class DiscoveryResult:
    """Outcome of one capped discovery run against one source."""

    source: str
    pages_fetched: int = 0
    items_fetched: int = 0
    skipped: dict[str, int] = field(default_factory=dict)
    truncated: bool = False
    next_page_token: str | None = None
    duration_seconds: float = 0.0


class SourceGateway:
    """Wraps connectors with per-source breakers, rate limits and retries."""

    def __init__(
        self,
        registry: ConnectorRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        health: SourceHealth | None = None,
    ) -> None:
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.breaker_config = breaker_config or CircuitBreakerConfig.from_settings()
        self.health = health or LocalSourceHealth()
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, source: str) -> CircuitBreaker:
        breaker = self._breakers.get(source)
        if breaker is None:
            breaker = CircuitBreaker(source, self.breaker_config, health=self.health)
            self._breakers[source] = breaker
        return breaker

    def breaker_states(self) -> dict[str, dict[str, object]]:
        """Breaker snapshot for every registered source, read from shared health."""
        return {name: self.breaker(name).snapshot() for name in sorted(self.registry.names)}

    def success_rates(self) -> dict[str, float]:
        rates: dict[str, float] = {}
        for name in sorted(self.registry.names):
            rate = self.health.success_rate(name)
            if rate is not None:
                rates[name] = rate
        return rates

    def _record_outcome(self, source: str, *, success: bool) -> None:
        rate = self.health.record_outcome(source, success=success)
        record_source_call(source=source, success=success, success_rate=rate)

    async def fetch_page(
        self,
        source: str,
        descriptor: SearchDescriptor,
        page_token: str | None = None,
    ) -> DiscoveryPage:
        """Fetch one page with breaker, rate limiting and retry applied."""
        connector = self.registry.get(source)
        breaker = self.breaker(source)

        async def _attempt() -> DiscoveryPage:
            trial = breaker.before_call()
            try:
                await self.registry.rate_limiter.acquire(source)
                page = await connector.fetch_page(descriptor, page_token)
            except (SourceRegistrationError, asyncio.CancelledError):
                # Neither says anything about the source's health.
                if trial:
                    breaker.release_trial()
                raise
            except Exception as exc:
                breaker.record_failure()
                self._record_outcome(source, success=False)
                if not isinstance(exc, IngestionError):
                    logger.warning(
                        "Connector raised an unmapped error",
                        source=source,
                        error=type(exc).__name__,
                    )
                raise
            breaker.record_success()
            self._record_outcome(source, success=True)
            return page

        return await self.retry_policy.run(_attempt, operation=f"fetch_page:{source}")

    async def iter_pages(
        self,
        source: str,
        descriptor: SearchDescriptor,
        *,
        result: DiscoveryResult | None = None,
        max_pages: int | None = None,
        max_items: int | None = None,
    ) -> AsyncIterator[DiscoveryPage]:
        """
        Yield pages until the source is exhausted or a cap is hit.

        `result` is updated in place so callers keep the tally even when a
        later page raises.
        """
        default_pages, default_items = self.registry.page_caps(source)
        page_cap = max_pages or default_pages
        item_cap = max_items or default_items
        tally = result if result is not None else DiscoveryResult(source=source)
        started = time.monotonic()
        page_token: str | None = None

        try:
            while tally.pages_fetched < page_cap and tally.items_fetched < item_cap:
                page = await self.fetch_page(source, descriptor, page_token)
                tally.pages_fetched += 1
                remaining = item_cap - tally.items_fetched
                if len(page.events) > remaining:
                    page.events = page.events[:remaining]
                    tally.truncated = True
                tally.items_fetched += len(page.events)
                for reason in page.skipped:
                    tally.skipped[reason] = tally.skipped.get(reason, 0) + 1
                tally.next_page_token = page.next_page_token
                yield page
                if not page.next_page_token:
                    break
                page_token = page.next_page_token
            else:
                tally.truncated = tally.truncated or tally.next_page_token is not None
        finally:
            tally.duration_seconds = time.monotonic() - started

        logger.info(
            "Source discovery finished",
            source=source,
            pages=tally.pages_fetched,
            items=tally.items_fetched,
            skipped=sum(tally.skipped.values()),
            truncated=tally.truncated,
        )

