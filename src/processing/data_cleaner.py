"""
Per-field sanitation of extracted provider fields.

Every cleaner is a pure function returning the cleaned value and a list of
issue codes. Nothing here raises on bad input: unusable values degrade to
None (or a placeholder for the title) and surface as `FieldWarning`s.
"""

from __future__ import annotations

import html
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import urlsplit, urlunsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dateutil_parser

from src.core.config import settings
from src.core.domain import TITLE_PLACEHOLDER, FieldWarning, utc_now
from src.ingestion.source_connector import ExtractedFields

STAGE = "clean"

MAX_NAME_LENGTH = 200
MAX_TAG_LENGTH = 50
MAX_URL_LENGTH = 2048
MAX_PRICE_AMOUNT = 100_000.0

_TAG_RE = re.compile(r"<[^>]+>")
_SCRIPT_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_WS_RE = re.compile(r"\s+")
_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_AMOUNT_RE = re.compile(r"^-?\d+(?:\.\d+)?$")
_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(slots=True)
class CleanedFields:
    """Sanitized field values ready for normalization."""

    title: str
    description: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    start_is_date_only: bool = False
    timezone: str | None = None
    venue_name: str | None = None
    venue_id: str | None = None
    venue_timezone: str | None = None
    address: str | None = None
    address_parts: dict[str, str] = field(default_factory=dict)
    latitude: float | None = None
    longitude: float | None = None
    price_text: str | None = None
    price_min: float | None = None
    price_max: float | None = None
    currency: str | None = None
    is_free: bool | None = None
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    url: str | None = None
    email: str | None = None
    phone: str | None = None
    defaulted: set[str] = field(default_factory=set)
    warnings: list[FieldWarning] = field(default_factory=list)

    def warn(self, field_name: str, issue: str) -> None:
        self.warnings.append(FieldWarning(field=field_name, issue=issue, stage=STAGE))


# =============================================================================
# Field cleaners
# =============================================================================


def clean_text(value: Any, *, max_length: int) -> tuple[str | None, list[str]]:
    """Strip markup and control characters, collapse whitespace, truncate."""
    if value is None:
        return None, []
    if not isinstance(value, str):
        value = str(value)
    issues: list[str] = []

    text = html.unescape(value)
    stripped = _TAG_RE.sub(" ", _SCRIPT_RE.sub(" ", text))
    if stripped != text:
        issues.append("markup_removed")
    text = "".join(
        " " if unicodedata.category(char) in ("Cc", "Cf") else char for char in stripped
    )
    text = _WS_RE.sub(" ", text).strip()
    if not text:
        return None, issues

    if len(text) > max_length:
        cut = text[:max_length]
        boundary = cut.rfind(" ")
        if boundary >= max_length * 0.8:
            cut = cut[:boundary]
        text = cut.rstrip(" ,;:-")
        issues.append("truncated")
    return text, issues


def clean_title(value: Any) -> tuple[str, list[str], bool]:
    """Return `(title, issues, defaulted)`; a missing title becomes a placeholder."""
    text, issues = clean_text(value, max_length=settings.CLEANER_MAX_TITLE_LENGTH)
    if text is None:
        return TITLE_PLACEHOLDER, [*issues, "missing"], True
    return text, issues, False


def clean_url(value: Any) -> tuple[str | None, list[str]]:
    if value is None:
        return None, []
    text = str(value).strip()
    if not text:
        return None, []
    if text.startswith("//"):
        text = f"https:{text}"
    elif text.lower().startswith("www."):
        text = f"https://{text}"
    if len(text) > MAX_URL_LENGTH or any(char.isspace() for char in text):
        return None, ["invalid_url"]
    try:
        parts = urlsplit(text)
    except ValueError:
        return None, ["invalid_url"]
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc or "." not in parts.netloc:
        return None, ["invalid_url"]
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, "")), []


def clean_email(value: Any) -> tuple[str | None, list[str]]:
    if value is None:
        return None, []
    text = str(value).strip().removeprefix("mailto:").lower()
    if not text:
        return None, []
    if not _EMAIL_RE.match(text):
        return None, ["invalid_email"]
    return text, []


def clean_phone(value: Any) -> tuple[str | None, list[str]]:
    """Keep digits and a leading '+'; valid numbers have 7-15 digits."""
    if value is None:
        return None, []
    text = str(value).strip()
    if not text:
        return None, []
    digits = re.sub(r"\D", "", text)
    if not 7 <= len(digits) <= 15:
        return None, ["invalid_phone"]
    return (f"+{digits}" if text.startswith("+") else digits), []


def clean_amount(value: Any) -> tuple[float | None, list[str]]:
    """Coerce a structured price amount; negatives and absurd values are dropped."""
    if value is None or isinstance(value, bool):
        return None, []
    if isinstance(value, int | float):
        amount = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return None, []
        if not _AMOUNT_RE.match(text):
            return None, ["invalid_amount"]
        amount = float(text)
    if amount != amount:  # NaN
        return None, ["invalid_amount"]
    if amount < 0:
        return None, ["negative_price"]
    if amount > MAX_PRICE_AMOUNT:
        return None, ["price_out_of_range"]
    return round(amount, 2), []


def clean_currency(value: Any) -> tuple[str | None, list[str]]:
    if value is None:
        return None, []
    text = str(value).strip().upper()
    if not text:
        return None, []
    if not _CURRENCY_RE.match(text):
        return None, ["invalid_currency"]
    return text, []


def clean_coordinates(latitude: Any, longitude: Any) -> tuple[float | None, float | None, list[str]]:
    """Both coordinates must parse and be in range, otherwise both are dropped."""
    if latitude in (None, "") and longitude in (None, ""):
        return None, None, []
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        return None, None, ["invalid_coordinates"]
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None, None, ["coordinates_out_of_range"]
    if lat == 0.0 and lng == 0.0:
        return None, None, ["null_island"]
    return lat, lng, []


def clean_timezone(value: Any) -> tuple[str | None, list[str]]:
    if value is None:
        return None, []
    text = str(value).strip()
    if not text:
        return None, []
    try:
        ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError):
        return None, ["unknown_timezone"]
    return text, []


def clean_datetime(value: Any) -> tuple[datetime | None, bool, list[str]]:
    """
    Parse a date/time value; returns `(value, date_only, issues)`.

    Naive results are returned as-is; the normalizer attaches the timezone.
    """
    if value is None or value == "":
        return None, False, []
    if isinstance(value, datetime):
        return value, False, []
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day), True, []
    if isinstance(value, int | float) and not isinstance(value, bool):
        timestamp = float(value)
        if timestamp > 1e11:  # milliseconds
            timestamp /= 1000.0
        try:
            return datetime.fromtimestamp(timestamp, tz=UTC), False, []
        except (OverflowError, OSError, ValueError):
            return None, False, ["unparseable_date"]
    text = str(value).strip()
    if not text:
        return None, False, []
    try:
        parsed = dateutil_parser.isoparse(text)
    except ValueError:
        try:
            parsed = dateutil_parser.parse(text)
        except (ValueError, OverflowError):
            return None, False, ["unparseable_date"]
    return parsed, bool(_DATE_ONLY_RE.match(text)), []


def clean_list(values: Any, *, max_length: int) -> list[str]:
    """Clean a list of labels, dropping empties and case-insensitive repeats."""
    cleaned: list[str] = []
    seen: set[str] = set()
    for value in values or []:
        text, _issues = clean_text(value, max_length=max_length)
        if text is None or text.lower() in seen:
            continue
        seen.add(text.lower())
        cleaned.append(text)
    return cleaned


def clean_images(values: Any) -> tuple[list[str], list[str]]:
    images: list[str] = []
    issues: list[str] = []
    for value in values or []:
        url, url_issues = clean_url(value)
        if url is None:
            issues.extend(url_issues)
        elif url not in images:
            images.append(url)
    return images, issues


# =============================================================================
# Record cleaner
# =============================================================================


def clean_fields(extracted: ExtractedFields, *, now: datetime | None = None) -> CleanedFields:
    """Clean every extracted field; never raises."""
    title, title_issues, title_defaulted = clean_title(extracted.title)
    cleaned = CleanedFields(title=title)
    _record(cleaned, "title", title_issues)
    if title_defaulted:
        cleaned.defaulted.add("title")

    cleaned.description, issues = clean_text(
        extracted.description,
        max_length=settings.CLEANER_MAX_DESCRIPTION_LENGTH,
    )
    _record(cleaned, "description", issues)

    cleaned.start, cleaned.start_is_date_only, issues = clean_datetime(extracted.start)
    _record(cleaned, "start", issues)
    cleaned.end, _end_date_only, issues = clean_datetime(extracted.end)
    _record(cleaned, "end", issues)

    cleaned.timezone, issues = clean_timezone(extracted.timezone)
    _record(cleaned, "timezone", issues)
    cleaned.venue_timezone, issues = clean_timezone(extracted.venue_timezone)
    _record(cleaned, "venue_timezone", issues)

    cleaned.venue_name, issues = clean_text(extracted.venue_name, max_length=MAX_NAME_LENGTH)
    _record(cleaned, "venue", issues)
    cleaned.venue_id = str(extracted.venue_id).strip() if extracted.venue_id else None

    cleaned.address, issues = clean_text(extracted.address, max_length=MAX_NAME_LENGTH * 2)
    _record(cleaned, "address", issues)
    for key, raw_part in (extracted.address_parts or {}).items():
        part, _issues = clean_text(raw_part, max_length=MAX_NAME_LENGTH)
        if part is not None:
            cleaned.address_parts[key] = part

    cleaned.latitude, cleaned.longitude, issues = clean_coordinates(
        extracted.latitude,
        extracted.longitude,
    )
    _record(cleaned, "coordinates", issues)

    cleaned.price_text, issues = clean_text(extracted.price_text, max_length=MAX_NAME_LENGTH)
    _record(cleaned, "price", issues)
    cleaned.price_min, issues = clean_amount(extracted.price_min)
    _record(cleaned, "price", issues)
    cleaned.price_max, issues = clean_amount(extracted.price_max)
    _record(cleaned, "price", issues)
    cleaned.currency, issues = clean_currency(extracted.currency)
    _record(cleaned, "currency", issues)
    cleaned.is_free = extracted.is_free if isinstance(extracted.is_free, bool) else None

    cleaned.categories = clean_list(extracted.categories, max_length=MAX_TAG_LENGTH)
    cleaned.tags = clean_list(extracted.tags, max_length=MAX_TAG_LENGTH)
    cleaned.images, issues = clean_images(extracted.images)
    _record(cleaned, "media", sorted(set(issues)))

    cleaned.url, issues = clean_url(extracted.url)
    _record(cleaned, "url", issues)
    cleaned.email, issues = clean_email(extracted.email)
    _record(cleaned, "email", issues)
    cleaned.phone, issues = clean_phone(extracted.phone)
    _record(cleaned, "phone", issues)

    _check_schedule(cleaned, now=now or utc_now())
    return cleaned


def _record(cleaned: CleanedFields, field_name: str, issues: list[str]) -> None:
    for issue in issues:
        cleaned.warn(field_name, issue)


def _check_schedule(cleaned: CleanedFields, *, now: datetime) -> None:
    if cleaned.start is None:
        cleaned.warn("start", "missing")
        return
    start = _comparable(cleaned.start)
    if start < now - timedelta(days=settings.CLEANER_STALE_START_DAYS):
        cleaned.warn("start", "stale")
    if cleaned.end is not None and _comparable(cleaned.end) < start:
        cleaned.warn("end", "end_before_start")


def _comparable(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
