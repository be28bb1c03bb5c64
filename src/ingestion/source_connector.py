"""
Source connector contract, typed search descriptors and shared HTTP handling.

Each provider implements `SourceConnector`. A connector fetches one page at a
time for a typed descriptor and maps provider JSON into `RawEvent`s; paging
caps are enforced by the caller (`SourceGateway`).
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, ClassVar

import httpx
import structlog

from src.core.config import settings
from src.core.domain import Category, RawEvent, utc_now
from src.core.errors import (
    PermanentError,
    ReasonCode,
    RetryableError,
    SourceRegistrationError,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Descriptors
# =============================================================================


@dataclass(frozen=True)
class SearchDescriptor:
    """Provider-independent search filters shared by every descriptor variant."""

    kind: ClassVar[str] = "generic"

    location: str | None = None
    keyword: str | None = None
    category: Category | None = None
    start: datetime | None = None
    end: datetime | None = None
    page_size: int = 50

    def validate(self, *, require_location: bool = True) -> None:
        if self.page_size < 1:
            msg = f"{self.kind} descriptor page_size must be >= 1"
            raise SourceRegistrationError(msg)
        if self.start is not None and self.end is not None and self.end < self.start:
            msg = f"{self.kind} descriptor end must not precede start"
            raise SourceRegistrationError(msg)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind
        for key in ("start", "end"):
            value = payload.get(key)
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        if self.category is not None:
            payload["category"] = self.category.value
        return payload


@dataclass(frozen=True)
class TicketmasterDescriptor(SearchDescriptor):
    kind: ClassVar[str] = "ticketmaster"

    country_code: str | None = "US"
    radius_miles: int | None = None
    page_size: int = 100

    def validate(self, *, require_location: bool = True) -> None:
        super().validate(require_location=require_location)
        if require_location and not self.location:
            msg = "ticketmaster descriptor requires a location"
            raise SourceRegistrationError(msg)
        if self.page_size > 200:
            msg = "ticketmaster page_size must be <= 200"
            raise SourceRegistrationError(msg)


@dataclass(frozen=True)
class EventbriteDescriptor(SearchDescriptor):
    kind: ClassVar[str] = "eventbrite"

    organization_ids: tuple[str, ...] = ()

    def validate(self, *, require_location: bool = True) -> None:
        super().validate(require_location=require_location)
        if not self.organization_ids:
            msg = "eventbrite descriptor requires at least one organization id"
            raise SourceRegistrationError(msg)


@dataclass(frozen=True)
class YelpDescriptor(SearchDescriptor):
    kind: ClassVar[str] = "yelp"

    radius_meters: int | None = None
    free_only: bool = False

    def validate(self, *, require_location: bool = True) -> None:
        super().validate(require_location=require_location)
        if require_location and not self.location:
            msg = "yelp descriptor requires a location"
            raise SourceRegistrationError(msg)
        if self.radius_meters is not None and not 0 < self.radius_meters <= 40_000:
            msg = "yelp radius_meters must be within (0, 40000]"
            raise SourceRegistrationError(msg)


# =============================================================================
# Connector results
# =============================================================================


@dataclass(slots=True)
class ExtractedFields:
    """Provider-independent view of one payload, before cleaning."""

    title: str | None = None
    description: str | None = None
    start: Any = None
    end: Any = None
    timezone: str | None = None
    venue_name: str | None = None
    venue_id: str | None = None
    venue_timezone: str | None = None
    address: str | None = None
    address_parts: dict[str, str | None] = field(default_factory=dict)
    latitude: Any = None
    longitude: Any = None
    price_text: str | None = None
    price_min: Any = None
    price_max: Any = None
    currency: str | None = None
    is_free: bool | None = None
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    url: str | None = None
    email: str | None = None
    phone: str | None = None

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> ExtractedFields:
        """Read a payload that already uses the standard field names."""
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        for list_key in ("categories", "tags", "images"):
            raw_value = values.get(list_key)
            if raw_value is None:
                values.pop(list_key, None)
            elif isinstance(raw_value, str):
                values[list_key] = [raw_value]
            else:
                values[list_key] = [str(item) for item in raw_value if item is not None]
        if not isinstance(values.get("address_parts", {}), dict):
            values.pop("address_parts")
        return cls(**values)


@dataclass(slots=True)
class DiscoveryPage:
    """One page of mapped events plus the cursor for the next page."""

    events: list[RawEvent] = field(default_factory=list)
    next_page_token: str | None = None
    skipped: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ConnectorConfig:
    """Connector registration loaded from YAML."""

    name: str
    provider: str
    enabled: bool = True
    base_url: str | None = None
    reputation: float = 0.5
    source_kind: str | None = None
    rate_limit_requests: int | None = None
    rate_limit_window_seconds: float | None = None
    max_pages: int | None = None
    max_items: int | None = None
    defaults: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Connector base
# =============================================================================


class SourceConnector(ABC):
    """Base class for one external event provider."""

    provider: ClassVar[str]
    descriptor_type: ClassVar[type[SearchDescriptor]] = SearchDescriptor
    default_base_url: ClassVar[str] = ""

    def __init__(
        self,
        *,
        config: ConnectorConfig,
        http_client: httpx.AsyncClient,
        user_agents: list[str] | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.config = config
        self.http_client = http_client
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        agents = user_agents or settings.CONNECTOR_USER_AGENTS or ["EventIngest/1.0"]
        self._user_agents = itertools.cycle(agents)
        self.timeout_seconds = timeout_seconds or settings.CONNECTOR_REQUEST_TIMEOUT_SECONDS

    @property
    def name(self) -> str:
        return self.config.name

    def build_descriptor(
        self,
        *,
        location: str | None = None,
        category: Category | str | None = None,
        keyword: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> SearchDescriptor:
        """Combine job targeting with registered defaults into a typed descriptor."""
        values: dict[str, Any] = dict(self.config.defaults)
        overrides = {
            "location": location,
            "keyword": keyword,
            "start": start,
            "end": end,
            "category": Category(category) if category else None,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        allowed = {item.name for item in fields(self.descriptor_type)}
        unknown = sorted(set(values) - allowed)
        if unknown:
            msg = f"Unknown descriptor fields for {self.provider}: {', '.join(unknown)}"
            raise SourceRegistrationError(msg)
        for sequence_key in ("organization_ids",):
            if sequence_key in values and not isinstance(values[sequence_key], tuple):
                values[sequence_key] = tuple(values[sequence_key])
        descriptor = self.descriptor_type(**values)
        self.validate_descriptor(descriptor)
        return descriptor

    def validate_descriptor(self, descriptor: SearchDescriptor) -> None:
        if not isinstance(descriptor, self.descriptor_type):
            msg = (
                f"Connector '{self.name}' expects {self.descriptor_type.__name__}, "
                f"got {type(descriptor).__name__}"
            )
            raise SourceRegistrationError(msg)
        descriptor.validate()

    @abstractmethod
    async def fetch_page(
        self,
        descriptor: SearchDescriptor,
        page_token: str | None = None,
    ) -> DiscoveryPage:
        """Fetch one page of events; raises `RetryableError` / `PermanentError`."""

    @staticmethod
    @abstractmethod
    def extract_fields(payload: dict[str, Any]) -> ExtractedFields:
        """Map a stored provider payload into provider-independent fields."""

    def _raw_event(
        self,
        *,
        provider_event_id: Any,
        payload: dict[str, Any],
        descriptor: SearchDescriptor,
    ) -> RawEvent:
        return RawEvent(
            provider=self.name,
            provider_event_id=str(provider_event_id),
            payload=payload,
            discovered_at=utc_now(),
            descriptor=descriptor.to_dict(),
        )

    async def _get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        request_headers = {"User-Agent": next(self._user_agents), "Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        try:
            response = await self.http_client.get(
                url,
                params={key: value for key, value in (params or {}).items() if value is not None},
                headers=request_headers,
                timeout=self.timeout_seconds,
                follow_redirects=True,
            )
        except httpx.TimeoutException as exc:
            msg = f"{self.provider} request timed out"
            raise RetryableError(msg, reason=ReasonCode.TIMEOUT) from exc
        except httpx.TransportError as exc:
            msg = f"{self.provider} network error: {type(exc).__name__}"
            raise RetryableError(msg, reason=ReasonCode.NETWORK) from exc
        except httpx.DecodingError as exc:
            msg = f"{self.provider} response body could not be decoded"
            raise PermanentError(msg, reason=ReasonCode.MALFORMED_PAYLOAD) from exc
        except httpx.TooManyRedirects as exc:
            msg = f"{self.provider} redirected too many times"
            raise PermanentError(msg, reason=ReasonCode.BAD_REQUEST) from exc

        self._raise_for_status(response)
        try:
            payload = response.json()
        except ValueError as exc:
            msg = f"{self.provider} returned a non-JSON body"
            raise PermanentError(msg, reason=ReasonCode.MALFORMED_PAYLOAD) from exc
        if not isinstance(payload, dict):
            msg = f"{self.provider} response payload is not a JSON object"
            raise PermanentError(msg, reason=ReasonCode.MALFORMED_PAYLOAD)
        return payload

    def _raise_for_status(self, response: httpx.Response) -> None:
        status_code = response.status_code
        if status_code < 400:
            return
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        if status_code == 429:
            msg = f"{self.provider} rate limited the request"
            raise RetryableError(
                msg,
                reason=ReasonCode.RATE_LIMITED,
                retry_after=retry_after,
                status_code=status_code,
            )
        if status_code >= 500:
            msg = f"{self.provider} returned HTTP {status_code}"
            raise RetryableError(
                msg,
                reason=ReasonCode.UPSTREAM_UNAVAILABLE,
                retry_after=retry_after,
                status_code=status_code,
            )
        if status_code in (401, 403):
            msg = f"{self.provider} rejected credentials (HTTP {status_code})"
            raise PermanentError(msg, reason=ReasonCode.INVALID_CREDENTIALS, status_code=status_code)
        if status_code == 404:
            msg = f"{self.provider} resource not found"
            raise PermanentError(msg, reason=ReasonCode.NOT_FOUND, status_code=status_code)
        msg = f"{self.provider} rejected the request (HTTP {status_code})"
        raise PermanentError(msg, reason=ReasonCode.BAD_REQUEST, status_code=status_code)


class GenericConnector(SourceConnector):
    """
    Connector for feeds already publishing standard field names.

    Expects `{"events": [...], "next": <token|null>}` with an `id` per event.
    """

    provider = "generic"

    async def fetch_page(
        self,
        descriptor: SearchDescriptor,
        page_token: str | None = None,
    ) -> DiscoveryPage:
        self.validate_descriptor(descriptor)
        payload = await self._get_json(
            self.base_url,
            params={
                "location": descriptor.location,
                "q": descriptor.keyword,
                "category": descriptor.category.value if descriptor.category else None,
                "page": page_token,
                "limit": descriptor.page_size,
            },
        )
        page = DiscoveryPage(next_page_token=_safe_str(payload.get("next")))
        for item in event_items(payload.get("events"), provider=self.provider):
            if not isinstance(item, dict) or _safe_str(item.get("id")) is None:
                page.skipped.append("missing_event_id")
                continue
            page.events.append(
                self._raw_event(provider_event_id=item["id"], payload=item, descriptor=descriptor)
            )
        return page

    @staticmethod
    def extract_fields(payload: dict[str, Any]) -> ExtractedFields:
        return ExtractedFields.from_mapping(payload)


# =============================================================================
# Helpers
# =============================================================================


def parse_retry_after(raw_retry_after: str | None) -> float | None:
    """Parse a Retry-After header given either as seconds or an HTTP date."""
    if raw_retry_after is None:
        return None
    retry_after = raw_retry_after.strip()
    if not retry_after:
        return None
    try:
        parsed = float(retry_after)
    except ValueError:
        try:
            when = parsedate_to_datetime(retry_after)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        return max(0.0, (when - datetime.now(tz=UTC)).total_seconds())
    return parsed if parsed >= 0 else None


def event_items(value: Any, *, provider: str) -> list[Any]:
    """The events array of a page; anything other than a list is malformed."""
    if value is None:
        return []
    if not isinstance(value, list):
        msg = f"{provider} events field is {type(value).__name__}, expected a list"
        raise PermanentError(msg, reason=ReasonCode.MALFORMED_PAYLOAD)
    return value


def numeric_page_token(page_token: str | None, *, provider: str) -> int:
    """Page number or offset carried in a page token; empty means the first page."""
    if not page_token:
        return 0
    try:
        value = int(page_token)
    except ValueError as exc:
        msg = f"{provider} page token {page_token!r} is not a number"
        raise PermanentError(msg, reason=ReasonCode.MALFORMED_PAYLOAD) from exc
    if value < 0:
        msg = f"{provider} page token {page_token!r} is negative"
        raise PermanentError(msg, reason=ReasonCode.MALFORMED_PAYLOAD)
    return value


def _safe_str(value: Any) -> str | None:
    if value is None:
        return None
    as_str = str(value).strip()
    return as_str or None


def first_present(*values: Any) -> Any:
    for value in values:
        if value not in (None, "", [], {}):
            return value
    return None


def dig(payload: Any, *path: str | int) -> Any:
    """Safely walk nested dicts/lists; returns None on any missing hop."""
    current = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current
