"""
Address resolution with a provider chain, TTL cache and city-centroid fallback.

Providers are tried in order (primary, then secondary). When both fail or
find nothing, the centroid of the target city is returned with a low
confidence so callers can tell it apart from a precise match. Cache hits skip
provider rate limiting entirely.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Protocol

import structlog
from geopy.exc import GeopyError
from geopy.geocoders import ArcGIS, Nominatim

from src.core.config import settings
from src.core.domain import Coordinates, FieldConfidence, NormalizedEvent, utc_now
from src.core.observability import record_geocoder_lookup
from src.ingestion.rate_limiter import TokenBucketRateLimiter
from src.processing.city_reference import lookup_city
from src.processing.result_cache import TTLCache, normalize_cache_text

logger = structlog.get_logger(__name__)

STAGE = "geocode"
CENTROID_CONFIDENCE = 0.3
CENTROID_CITY_ONLY_CONFIDENCE = 0.2
LOW_PRECISION_THRESHOLD = 0.5


@dataclass(slots=True, frozen=True)
class GeocodeMatch:
    """One provider answer."""

    lat: float
    lng: float
    formatted: str
    confidence: float


@dataclass(slots=True, frozen=True)
class GeocodeResult:
    coordinates: Coordinates | None
    formatted_address: str
    confidence: float
    source: str
    cached: bool = False

    @property
    def is_precise(self) -> bool:
        return self.coordinates is not None and self.confidence >= LOW_PRECISION_THRESHOLD


class GeocodingProvider(Protocol):
    name: str

    async def geocode(self, address: str) -> GeocodeMatch | None: ...


class GeopyProvider:
    """Adapter running a blocking geopy geocoder off the event loop."""

    def __init__(self, name: str, geocoder: Any, *, timeout_seconds: float | None = None) -> None:
        self.name = name
        self._geocoder = geocoder
        self.timeout_seconds = timeout_seconds or settings.GEOCODER_TIMEOUT_SECONDS

    async def geocode(self, address: str) -> GeocodeMatch | None:
        location = await asyncio.to_thread(
            self._geocoder.geocode,
            address,
            exactly_one=True,
            timeout=self.timeout_seconds,
        )
        if location is None:
            return None
        return GeocodeMatch(
            lat=float(location.latitude),
            lng=float(location.longitude),
            formatted=str(location.address or address),
            confidence=_match_confidence(self.name, getattr(location, "raw", None) or {}),
        )


def build_provider(name: str) -> GeopyProvider:
    provider_name = name.strip().lower()
    if provider_name == "nominatim":
        return GeopyProvider(
            provider_name,
            Nominatim(
                user_agent=settings.GEOCODER_USER_AGENT,
                timeout=settings.GEOCODER_TIMEOUT_SECONDS,
            ),
        )
    if provider_name == "arcgis":
        return GeopyProvider(provider_name, ArcGIS(timeout=settings.GEOCODER_TIMEOUT_SECONDS))
    msg = f"Unsupported geocoding provider: {name}"
    raise ValueError(msg)


def build_default_providers() -> list[GeocodingProvider]:
    providers: list[GeocodingProvider] = [build_provider(settings.GEOCODER_PRIMARY)]
    if settings.GEOCODER_SECONDARY:
        providers.append(build_provider(settings.GEOCODER_SECONDARY))
    return providers


class Geocoder:
    """Provider chain with caching, rate limiting and centroid fallback."""

    def __init__(
        self,
        providers: list[GeocodingProvider] | None = None,
        *,
        cache: TTLCache[GeocodeResult] | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
        batch_concurrency: int | None = None,
        batch_delay_seconds: float | None = None,
    ) -> None:
        self.providers = providers if providers is not None else build_default_providers()
        if not self.providers:
            msg = "At least one geocoding provider must be configured"
            raise ValueError(msg)
        self.cache = cache or TTLCache(
            ttl_seconds=settings.GEOCODER_CACHE_TTL_SECONDS,
            max_entries=settings.GEOCODER_CACHE_MAX_ENTRIES,
        )
        requests_per_second = settings.GEOCODER_REQUESTS_PER_SECOND
        self.rate_limiter = rate_limiter or TokenBucketRateLimiter(
            max(1, round(requests_per_second)),
            max(1.0, round(requests_per_second)) / requests_per_second,
        )
        self.batch_concurrency = batch_concurrency or settings.GEOCODER_BATCH_CONCURRENCY
        self.batch_delay_seconds = (
            settings.GEOCODER_BATCH_DELAY_SECONDS
            if batch_delay_seconds is None
            else batch_delay_seconds
        )

    async def resolve(self, address: str, *, city_hint: str | None = None) -> GeocodeResult:
        """Resolve an address; never raises for provider failures."""
        cache_key = normalize_cache_text(address)
        if not cache_key:
            return GeocodeResult(coordinates=None, formatted_address="", confidence=0.0, source="none")

        cached = self.cache.get(cache_key)
        if cached is not None:
            record_geocoder_lookup(source="cache")
            return replace(cached, cached=True)

        for provider in self.providers:
            await self.rate_limiter.acquire(f"geocoder:{provider.name}")
            try:
                match = await provider.geocode(address)
            except (GeopyError, OSError) as exc:
                logger.warning(
                    "Geocoding provider failed",
                    provider=provider.name,
                    error=type(exc).__name__,
                )
                continue
            if match is None:
                continue
            result = GeocodeResult(
                coordinates=Coordinates(
                    lat=match.lat,
                    lng=match.lng,
                    confidence=match.confidence,
                    source=provider.name,
                ),
                formatted_address=match.formatted,
                confidence=match.confidence,
                source=provider.name,
            )
            self.cache.set(cache_key, result)
            record_geocoder_lookup(source=provider.name)
            return result

        fallback = centroid_fallback(address, city_hint=city_hint)
        record_geocoder_lookup(source=fallback.source)
        return fallback

    async def resolve_many(
        self,
        addresses: list[str],
        *,
        city_hint: str | None = None,
    ) -> list[GeocodeResult]:
        """Batch resolve with bounded concurrency and an inter-request delay."""
        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def _resolve(address: str) -> GeocodeResult:
            async with semaphore:
                result = await self.resolve(address, city_hint=city_hint)
                if not result.cached and self.batch_delay_seconds > 0:
                    await asyncio.sleep(self.batch_delay_seconds)
                return result

        return list(await asyncio.gather(*(_resolve(address) for address in addresses)))

    async def geocode_event(self, event: NormalizedEvent, *, city_hint: str | None = None) -> None:
        """Fill `event.coordinates` from its address; skipped when there is no address."""
        if event.coordinates is not None:
            return
        if event.address is None or event.address.is_empty:
            event.warn("coordinates", "geocoding_skipped_no_address", stage=STAGE)
            return

        result = await self.resolve(
            event.address.one_line(),
            city_hint=event.address.city_key() or city_hint,
        )
        if result.coordinates is None:
            event.warn("coordinates", "geocoding_failed", stage=STAGE)
            return

        origin = f"geocoder:{result.source}"
        verified_at = event.last_verified_at or utc_now()
        event.set_field(
            "coordinates",
            result.coordinates,
            confidence=FieldConfidence.DERIVED,
            origin=origin,
            verified_at=verified_at,
        )
        if event.venue is not None and event.venue.coordinates is None:
            event.venue.coordinates = result.coordinates
        if not result.is_precise:
            event.warn("coordinates", "low_precision_centroid", stage=STAGE)


def centroid_fallback(address: str, *, city_hint: str | None = None) -> GeocodeResult:
    """Centroid of the target city with a low confidence, or an empty result."""
    match = lookup_city(city_hint) or lookup_city(address)
    if match is None:
        return GeocodeResult(coordinates=None, formatted_address=address, confidence=0.0, source="none")
    city, region_matched = match
    confidence = CENTROID_CONFIDENCE if region_matched else CENTROID_CITY_ONLY_CONFIDENCE
    return GeocodeResult(
        coordinates=Coordinates(
            lat=city.latitude,
            lng=city.longitude,
            confidence=confidence,
            source="centroid",
        ),
        formatted_address=f"{city.name}, {city.region}",
        confidence=confidence,
        source="centroid",
    )


def _match_confidence(provider_name: str, raw: dict[str, Any]) -> float:
    if provider_name == "arcgis":
        try:
            return max(0.0, min(1.0, float(raw.get("score", 80)) / 100.0))
        except (TypeError, ValueError):
            return 0.8
    try:
        importance = float(raw.get("importance", 0.5))
    except (TypeError, ValueError):
        importance = 0.5
    return max(0.6, min(0.95, 0.6 + importance * 0.4))
