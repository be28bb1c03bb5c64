"""
Domain types shared by ingestion, processing, storage and workers.

Raw provider payloads enter as `RawEvent`; everything downstream operates on
`NormalizedEvent`, whose attributes each carry a `FieldProvenance` recording
how trustworthy the value is and which raw record it came from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any
from uuid import NAMESPACE_URL, UUID, uuid5

TITLE_PLACEHOLDER = "Untitled Event"


class Category(StrEnum):
    """Closed category vocabulary for canonical events."""

    MUSIC = "music"
    ARTS = "arts"
    FOOD = "food"
    SPORTS = "sports"
    BUSINESS = "business"
    ENTERTAINMENT = "entertainment"
    EDUCATION = "education"
    COMMUNITY = "community"
    TECHNOLOGY = "technology"
    HEALTH = "health"
    FASHION = "fashion"
    TRAVEL = "travel"
    AUTOMOTIVE = "automotive"
    FAMILY = "family"
    NIGHTLIFE = "nightlife"
    OUTDOOR = "outdoor"
    SHOPPING = "shopping"
    VOLUNTEER = "volunteer"
    UNCATEGORIZED = "uncategorized"

    @classmethod
    def assignable(cls) -> list[Category]:
        return [category for category in cls if category is not cls.UNCATEGORIZED]


class FieldConfidence(StrEnum):
    """How a normalized value was obtained."""

    PROVIDER_ASSERTED = "provider_asserted"
    DERIVED = "derived"
    DEFAULTED = "defaulted"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    FieldConfidence.DEFAULTED: 0,
    FieldConfidence.DERIVED: 1,
    FieldConfidence.PROVIDER_ASSERTED: 2,
}


class QualityTier(StrEnum):
    PREMIUM = "premium"
    STANDARD = "standard"
    BASIC = "basic"
    POOR = "poor"


class JobType(StrEnum):
    DISCOVERY = "discovery"
    INGESTION = "ingestion"


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def raw_event_id(provider: str, provider_event_id: str) -> UUID:
    """Stable id for one (provider, provider-native id) pair."""
    return uuid5(NAMESPACE_URL, f"raw-event:{provider.strip().lower()}:{provider_event_id.strip()}")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True, frozen=True)
class RawEvent:
    """Unmodified provider payload plus discovery metadata."""

    provider: str
    provider_event_id: str
    payload: dict[str, Any]
    discovered_at: datetime
    descriptor: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> UUID:
        return raw_event_id(self.provider, self.provider_event_id)

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.provider_event_id}"


@dataclass(slots=True, frozen=True)
class FieldProvenance:
    """Confidence and origin of one normalized attribute value."""

    confidence: FieldConfidence
    origin: str
    verified_at: datetime

    def sort_key(self) -> tuple[int, datetime, str]:
        return (self.confidence.rank, self.verified_at, self.origin)


@dataclass(slots=True, frozen=True)
class FieldWarning:
    """One `(field, issue)` pair recorded by a pipeline stage."""

    field: str
    issue: str
    stage: str = ""


@dataclass(slots=True)
class Address:
    """Structured address; `raw` keeps the provider's original string."""

    raw: str | None = None
    line1: str | None = None
    locality: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None

    @property
    def is_empty(self) -> bool:
        return not any(
            (self.raw, self.line1, self.locality, self.region, self.postal_code, self.country)
        )

    def one_line(self) -> str:
        parts = [self.line1, self.locality, self.region, self.postal_code, self.country]
        joined = ", ".join(part for part in parts if part)
        return joined or (self.raw or "")

    def city_key(self) -> str | None:
        if not self.locality:
            return None
        if self.region:
            return f"{self.locality}, {self.region}".lower()
        return self.locality.lower()


@dataclass(slots=True, frozen=True)
class Coordinates:
    lat: float
    lng: float
    confidence: float = 1.0
    source: str = "provider"


@dataclass(slots=True, frozen=True)
class PriceRange:
    """Typed price; amounts may be None when only currency/free-ness is known."""

    min_amount: float | None = None
    max_amount: float | None = None
    currency: str | None = None
    is_free: bool = False


@dataclass(slots=True, frozen=True)
class ProvenanceLink:
    raw_event_id: UUID
    provider: str
    provider_event_id: str
    discovered_at: datetime

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.provider_event_id}"


@dataclass(slots=True)
class Venue:
    """Venue identity; provider ids accumulate as venue records merge."""

    name: str
    address: Address | None = None
    coordinates: Coordinates | None = None
    timezone: str | None = None
    provider_ids: dict[str, str] = field(default_factory=dict)
    id: UUID | None = None


@dataclass(slots=True, frozen=True)
class DimensionScore:
    score: float
    weight: float
    factors: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class QualityScore:
    score: float
    tier: QualityTier
    breakdown: dict[str, DimensionScore]
    recommendations: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Fingerprint:
    """Derived similarity key used only to look up merge candidates."""

    title_bucket: str
    event_date: date | None
    lat_bucket: float | None
    lng_bucket: float | None
    venue_bucket: str | None
    title_key: str = ""
    venue_key: str = ""


@dataclass(slots=True)
class NormalizedEvent:
    """Cleaned, canonical representation of one real-world event."""

    title: str
    description: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str | None = None
    venue: Venue | None = None
    address: Address | None = None
    coordinates: Coordinates | None = None
    category: Category = Category.UNCATEGORIZED
    tags: list[str] = field(default_factory=list)
    price: PriceRange | None = None
    media: list[str] = field(default_factory=list)
    url: str | None = None
    email: str | None = None
    phone: str | None = None
    provenance: list[ProvenanceLink] = field(default_factory=list)
    field_provenance: dict[str, FieldProvenance] = field(default_factory=dict)
    warnings: list[FieldWarning] = field(default_factory=list)
    classification_source: str | None = None
    source_reputation: float = 0.5
    quality: QualityScore | None = None
    id: UUID | None = None
    version: int = 0

    def confidence_of(self, attribute: str) -> FieldConfidence | None:
        provenance = self.field_provenance.get(attribute)
        return provenance.confidence if provenance is not None else None

    def set_field(
        self,
        attribute: str,
        value: Any,
        *,
        confidence: FieldConfidence,
        origin: str,
        verified_at: datetime,
    ) -> None:
        setattr(self, attribute, value)
        self.record_provenance(
            attribute,
            confidence=confidence,
            origin=origin,
            verified_at=verified_at,
        )

    def record_provenance(
        self,
        key: str,
        *,
        confidence: FieldConfidence,
        origin: str,
        verified_at: datetime,
    ) -> None:
        """Record provenance for an attribute or sub-field (e.g. `currency`)."""
        self.field_provenance[key] = FieldProvenance(
            confidence=confidence,
            origin=origin,
            verified_at=verified_at,
        )

    def warn(self, field_name: str, issue: str, *, stage: str) -> None:
        warning = FieldWarning(field=field_name, issue=issue, stage=stage)
        if warning not in self.warnings:
            self.warnings.append(warning)

    @property
    def has_placeholder_title(self) -> bool:
        return self.confidence_of("title") == FieldConfidence.DEFAULTED

    @property
    def last_verified_at(self) -> datetime | None:
        if not self.provenance:
            return None
        return max(link.discovered_at for link in self.provenance)


@dataclass(slots=True)
class MergeRecord:
    """Audit record of one merge decision against a canonical event."""

    canonical_id: UUID
    incoming_raw_event_ids: list[UUID]
    decided_at: datetime
    similarity: dict[str, float] = field(default_factory=dict)
    decisions: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(slots=True)
class IngestionJob:
    """Unit of scheduled work, owned by the worker that claimed it."""

    job_type: JobType
    target: dict[str, Any]
    priority: int = 5
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 4
    last_error: str | None = None
    last_error_reason: str | None = None
    worker_id: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    available_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    id: UUID | None = None
