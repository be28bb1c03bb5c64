"""
Canonicalize cleaned fields into a `NormalizedEvent`.

Every attribute set here records a `FieldProvenance`: values the provider
stated structurally are `provider_asserted`, values inferred from other fields
(venue/city timezone, currency symbol, comma-split address) are `derived`, and
configuration fallbacks are `defaulted`.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from zoneinfo import ZoneInfo

import structlog

from src.core.config import settings
from src.core.domain import (
    Address,
    Category,
    Coordinates,
    FieldConfidence,
    NormalizedEvent,
    PriceRange,
    ProvenanceLink,
    RawEvent,
    Venue,
)
from src.core.source_reputation import DEFAULT_SOURCE_REPUTATION
from src.processing.city_reference import city_timezone
from src.processing.data_cleaner import CleanedFields

logger = structlog.get_logger(__name__)

STAGE = "normalize"

Assign = Callable[[str, object, FieldConfidence], None]

ASSERTED = FieldConfidence.PROVIDER_ASSERTED
DERIVED = FieldConfidence.DERIVED
DEFAULTED = FieldConfidence.DEFAULTED

# Provider label (lower-cased) -> canonical category. Checked in label order.
PROVIDER_CATEGORY_MAP: dict[str, dict[str, Category]] = {
    "ticketmaster": {
        "music": Category.MUSIC,
        "sports": Category.SPORTS,
        "arts & theatre": Category.ARTS,
        "film": Category.ENTERTAINMENT,
        "comedy": Category.ENTERTAINMENT,
        "family": Category.FAMILY,
        "children's theatre": Category.FAMILY,
        "fairs & festivals": Category.COMMUNITY,
    },
    "eventbrite": {
        "music": Category.MUSIC,
        "business & professional": Category.BUSINESS,
        "food & drink": Category.FOOD,
        "community & culture": Category.COMMUNITY,
        "performing & visual arts": Category.ARTS,
        "film, media & entertainment": Category.ENTERTAINMENT,
        "sports & fitness": Category.SPORTS,
        "health & wellness": Category.HEALTH,
        "science & technology": Category.TECHNOLOGY,
        "travel & outdoor": Category.OUTDOOR,
        "charity & causes": Category.VOLUNTEER,
        "family & education": Category.EDUCATION,
        "fashion & beauty": Category.FASHION,
        "auto, boat & air": Category.AUTOMOTIVE,
        "nightlife": Category.NIGHTLIFE,
        "seasonal & holiday": Category.COMMUNITY,
    },
    "yelp": {
        "music": Category.MUSIC,
        "visual-arts": Category.ARTS,
        "performing-arts": Category.ARTS,
        "film": Category.ENTERTAINMENT,
        "lectures-books": Category.EDUCATION,
        "fashion": Category.FASHION,
        "food-and-drink": Category.FOOD,
        "festivals-fairs": Category.COMMUNITY,
        "charities": Category.VOLUNTEER,
        "sports-active-life": Category.SPORTS,
        "nightlife": Category.NIGHTLIFE,
        "kids-family": Category.FAMILY,
    },
}

CURRENCY_SYMBOLS: dict[str, str] = {"€": "EUR", "£": "GBP", "¥": "JPY"}
DOLLAR_CURRENCIES = frozenset({"USD", "CAD", "AUD", "NZD"})

_PRICE_RE = re.compile(
    r"""^\s*
    (?P<code>[A-Z]{3})?\s*
    (?P<symbol>[$€£¥])?\s*
    (?P<min>\d{1,6}(?:\.\d{1,2})?)
    (?:\s*(?:-|–|to)\s*[$€£¥]?\s*(?P<max>\d{1,6}(?:\.\d{1,2})?))?
    \s*(?P<code_after>[A-Z]{3})?\s*$""",
    re.VERBOSE,
)
_FREE_RE = re.compile(r"^\s*(free|free entry|free admission|no cover)\s*!?\s*$", re.IGNORECASE)
_REGION_POSTAL_RE = re.compile(r"^(?P<region>[A-Za-z]{2})\s+(?P<postal>[A-Za-z0-9][A-Za-z0-9 -]{2,9})$")
_POSTAL_RE = re.compile(r"^\d{5}(?:-\d{4})?$")


class EventNormalizer:
    """Builds a `NormalizedEvent` from one raw record and its cleaned fields."""

    def __init__(
        self,
        *,
        default_timezone: str | None = None,
        default_currency: str | None = None,
    ) -> None:
        self.default_timezone = default_timezone or settings.DEFAULT_TIMEZONE
        self.default_currency = (default_currency or settings.DEFAULT_CURRENCY).upper()

    def normalize(
        self,
        raw: RawEvent,
        cleaned: CleanedFields,
        *,
        source_reputation: float = DEFAULT_SOURCE_REPUTATION,
        provider_kind: str | None = None,
    ) -> NormalizedEvent:
        origin = raw.key
        verified_at = raw.discovered_at
        event = NormalizedEvent(
            title=cleaned.title,
            provenance=[
                ProvenanceLink(
                    raw_event_id=raw.id,
                    provider=raw.provider,
                    provider_event_id=raw.provider_event_id,
                    discovered_at=raw.discovered_at,
                )
            ],
            source_reputation=source_reputation,
        )
        for warning in cleaned.warnings:
            event.warn(warning.field, warning.issue, stage=warning.stage)

        def assign(attribute: str, value: object, confidence: FieldConfidence) -> None:
            event.set_field(
                attribute,
                value,
                confidence=confidence,
                origin=origin,
                verified_at=verified_at,
            )

        assign("title", cleaned.title, DEFAULTED if "title" in cleaned.defaulted else ASSERTED)
        if cleaned.description:
            assign("description", cleaned.description, ASSERTED)

        address, address_confidence = normalize_address(cleaned)
        if address is not None:
            assign("address", address, address_confidence)

        if cleaned.latitude is not None and cleaned.longitude is not None:
            assign(
                "coordinates",
                Coordinates(lat=cleaned.latitude, lng=cleaned.longitude, source="provider"),
                ASSERTED,
            )

        city_hint = _city_hint(address, raw)
        timezone_name, timezone_confidence = self._resolve_timezone(cleaned, city_hint)
        assign("timezone", timezone_name, timezone_confidence)
        self._normalize_schedule(event, cleaned, timezone_name, timezone_confidence, assign)

        if cleaned.venue_name:
            venue = Venue(
                name=cleaned.venue_name,
                address=address,
                coordinates=event.coordinates,
                timezone=cleaned.venue_timezone,
                provider_ids={raw.provider: cleaned.venue_id} if cleaned.venue_id else {},
            )
            assign("venue", venue, ASSERTED)

        normalized_price = self._normalize_price(cleaned)
        if normalized_price is not None:
            price, amount_confidence, currency_confidence = normalized_price
            assign("price", price, amount_confidence)
            event.record_provenance(
                "currency",
                confidence=currency_confidence,
                origin=origin,
                verified_at=verified_at,
            )
            if currency_confidence is not ASSERTED:
                event.warn("currency", f"currency_{currency_confidence.value}", stage=STAGE)
        elif cleaned.price_text:
            event.warn("price", "unstructured_price_ignored", stage=STAGE)

        category, unmapped = map_category(provider_kind or raw.provider, cleaned.categories)
        assign("category", category, ASSERTED if category is not Category.UNCATEGORIZED else DEFAULTED)
        tags = sorted({tag.lower() for tag in [*cleaned.tags, *unmapped]})
        if tags:
            assign("tags", tags, ASSERTED)
        if cleaned.images:
            assign("media", list(cleaned.images), ASSERTED)
        for attribute in ("url", "email", "phone"):
            value = getattr(cleaned, attribute)
            if value:
                assign(attribute, value, ASSERTED)

        logger.debug(
            "Event normalized",
            raw_event=raw.key,
            category=event.category.value,
            timezone=timezone_name,
            timezone_confidence=timezone_confidence.value,
            warnings=len(event.warnings),
        )
        return event

    def _resolve_timezone(
        self,
        cleaned: CleanedFields,
        city_hint: str | None,
    ) -> tuple[str, FieldConfidence]:
        if cleaned.timezone:
            return cleaned.timezone, ASSERTED
        if cleaned.venue_timezone:
            return cleaned.venue_timezone, DERIVED
        from_city = city_timezone(city_hint)
        if from_city:
            return from_city, DERIVED
        return self.default_timezone, DEFAULTED

    @staticmethod
    def _normalize_schedule(
        event: NormalizedEvent,
        cleaned: CleanedFields,
        timezone_name: str,
        timezone_confidence: FieldConfidence,
        assign: Assign,
    ) -> None:
        zone = ZoneInfo(timezone_name)
        for attribute, value in (("start_at", cleaned.start), ("end_at", cleaned.end)):
            if value is None:
                continue
            if value.tzinfo is not None:
                assign(attribute, value.astimezone(ZoneInfo("UTC")), ASSERTED)
                continue
            localized = value.replace(tzinfo=zone).astimezone(ZoneInfo("UTC"))
            confidence = ASSERTED if timezone_confidence is ASSERTED else DERIVED
            assign(attribute, localized, confidence)
        if cleaned.start_is_date_only:
            event.warn("start", "date_only", stage=STAGE)

    def _normalize_price(
        self,
        cleaned: CleanedFields,
    ) -> tuple[PriceRange, FieldConfidence, FieldConfidence] | None:
        """Return `(price, amount_confidence, currency_confidence)` or None."""
        price: PriceRange | None = None
        amount_confidence = ASSERTED
        currency = cleaned.currency
        currency_confidence = ASSERTED if currency else None

        if cleaned.price_min is not None or cleaned.price_max is not None:
            low, high = cleaned.price_min, cleaned.price_max
            if low is None:
                low = high
            free = bool(cleaned.is_free) or (low == 0 and (high in (None, 0)))
            price = PriceRange(min_amount=low, max_amount=high, currency=currency, is_free=free)
        elif cleaned.is_free:
            price = PriceRange(min_amount=0.0, max_amount=0.0, currency=currency, is_free=True)
        elif cleaned.price_text:
            parsed = parse_price_text(cleaned.price_text, default_currency=self.default_currency)
            if parsed is not None:
                price, text_currency, text_currency_confidence = parsed
                amount_confidence = DERIVED
                if currency is None:
                    currency, currency_confidence = text_currency, text_currency_confidence

        if price is None:
            return None
        if currency is None or currency_confidence is None:
            currency, currency_confidence = self.default_currency, DEFAULTED
        price = PriceRange(
            min_amount=price.min_amount,
            max_amount=price.max_amount,
            currency=currency,
            is_free=price.is_free,
        )
        return price, amount_confidence, currency_confidence


def parse_price_text(
    text: str,
    *,
    default_currency: str,
) -> tuple[PriceRange, str | None, FieldConfidence | None] | None:
    """
    Parse a price string only when the whole field is a price.

    "$35", "35-60 USD", "EUR 20" and "Free" parse; prose such as
    "tickets from $35 at the door" does not.
    """
    if _FREE_RE.match(text):
        return PriceRange(min_amount=0.0, max_amount=0.0, is_free=True), None, None
    match = _PRICE_RE.match(text)
    if match is None:
        return None
    code = match.group("code") or match.group("code_after")
    symbol = match.group("symbol")
    low = float(match.group("min"))
    high = float(match.group("max")) if match.group("max") else None
    if high is not None and high < low:
        low, high = high, low

    currency: str | None = None
    confidence: FieldConfidence | None = None
    if code:
        currency, confidence = code, ASSERTED
    elif symbol == "$":
        currency = default_currency if default_currency in DOLLAR_CURRENCIES else "USD"
        confidence = DERIVED
    elif symbol:
        currency, confidence = CURRENCY_SYMBOLS[symbol], DERIVED

    price = PriceRange(min_amount=low, max_amount=high, is_free=low == 0 and not high)
    return price, currency, confidence


def map_category(provider: str, labels: list[str]) -> tuple[Category, list[str]]:
    """Map provider labels onto the closed vocabulary; returns `(category, unmapped)`."""
    table = PROVIDER_CATEGORY_MAP.get(provider.lower(), {})
    vocabulary = {category.value: category for category in Category.assignable()}
    chosen: Category | None = None
    unmapped: list[str] = []
    for label in labels:
        key = label.strip().lower()
        mapped = table.get(key) or vocabulary.get(key)
        if mapped is None:
            unmapped.append(key)
        elif chosen is None:
            chosen = mapped
    return chosen or Category.UNCATEGORIZED, unmapped


def normalize_address(cleaned: CleanedFields) -> tuple[Address | None, FieldConfidence]:
    """Structured parts are asserted; a comma-split raw string is derived."""
    parts = cleaned.address_parts
    if any(parts.get(key) for key in ("line1", "locality", "region", "postal_code")):
        address = Address(
            raw=cleaned.address,
            line1=parts.get("line1"),
            locality=parts.get("locality"),
            region=parts.get("region"),
            postal_code=parts.get("postal_code"),
            country=parts.get("country"),
        )
        if address.raw is None:
            address.raw = address.one_line()
        return address, ASSERTED
    if cleaned.address:
        return parse_address(cleaned.address), DERIVED
    return None, DEFAULTED


def parse_address(raw: str) -> Address:
    """Split "line, locality, REGION POSTAL[, country]" keeping the raw string."""
    segments = [segment.strip() for segment in raw.split(",") if segment.strip()]
    address = Address(raw=raw)
    if not segments:
        return address
    if len(segments) >= 4:
        address.country = segments.pop()
    if len(segments) >= 3:
        address.line1 = segments[0]
        address.locality = segments[1]
        _assign_region_postal(address, segments[2])
    elif len(segments) == 2:
        if _REGION_POSTAL_RE.match(segments[1]) or len(segments[1]) == 2:
            address.locality = segments[0]
            _assign_region_postal(address, segments[1])
        else:
            address.line1 = segments[0]
            address.locality = segments[1]
    else:
        address.line1 = segments[0]
    return address


def _assign_region_postal(address: Address, segment: str) -> None:
    match = _REGION_POSTAL_RE.match(segment)
    if match:
        address.region = match.group("region").upper()
        address.postal_code = match.group("postal").strip()
    elif _POSTAL_RE.match(segment):
        address.postal_code = segment
    elif len(segment) == 2 and segment.isalpha():
        address.region = segment.upper()
    else:
        address.region = segment


def _city_hint(address: Address | None, raw: RawEvent) -> str | None:
    if address is not None:
        city_key = address.city_key()
        if city_key:
            return city_key
        if address.raw:
            return address.raw
    return descriptor_location(raw)


def descriptor_location(raw: RawEvent) -> str | None:
    location = raw.descriptor.get("location") if raw.descriptor else None
    return str(location) if location else None
