"""
JSON-safe codecs for domain objects stored in JSONB columns and returned by the API.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID

from src.core.domain import (
    Address,
    Category,
    Coordinates,
    DimensionScore,
    FieldConfidence,
    FieldProvenance,
    FieldWarning,
    MergeRecord,
    NormalizedEvent,
    PriceRange,
    ProvenanceLink,
    QualityScore,
    QualityTier,
    RawEvent,
    Venue,
)


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _uuid(value: Any) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


def address_to_dict(address: Address | None) -> dict[str, Any] | None:
    if address is None:
        return None
    return {
        "raw": address.raw,
        "line1": address.line1,
        "locality": address.locality,
        "region": address.region,
        "postal_code": address.postal_code,
        "country": address.country,
    }


def address_from_dict(data: dict[str, Any] | None) -> Address | None:
    if data is None:
        return None
    return Address(**data)


def coordinates_to_dict(coordinates: Coordinates | None) -> dict[str, Any] | None:
    if coordinates is None:
        return None
    return {
        "lat": coordinates.lat,
        "lng": coordinates.lng,
        "confidence": coordinates.confidence,
        "source": coordinates.source,
    }


def coordinates_from_dict(data: dict[str, Any] | None) -> Coordinates | None:
    if data is None:
        return None
    return Coordinates(
        lat=float(data["lat"]),
        lng=float(data["lng"]),
        confidence=float(data.get("confidence", 1.0)),
        source=str(data.get("source", "provider")),
    )


def venue_to_dict(venue: Venue | None) -> dict[str, Any] | None:
    if venue is None:
        return None
    return {
        "id": str(venue.id) if venue.id else None,
        "name": venue.name,
        "address": address_to_dict(venue.address),
        "coordinates": coordinates_to_dict(venue.coordinates),
        "timezone": venue.timezone,
        "provider_ids": dict(venue.provider_ids),
    }


def venue_from_dict(data: dict[str, Any] | None) -> Venue | None:
    if data is None:
        return None
    return Venue(
        name=data["name"],
        address=address_from_dict(data.get("address")),
        coordinates=coordinates_from_dict(data.get("coordinates")),
        timezone=data.get("timezone"),
        provider_ids=dict(data.get("provider_ids") or {}),
        id=_uuid(data.get("id")),
    )


def _price_to_dict(price: PriceRange | None) -> dict[str, Any] | None:
    if price is None:
        return None
    return {
        "min_amount": price.min_amount,
        "max_amount": price.max_amount,
        "currency": price.currency,
        "is_free": price.is_free,
    }


def _quality_to_dict(quality: QualityScore | None) -> dict[str, Any] | None:
    if quality is None:
        return None
    return {
        "score": quality.score,
        "tier": quality.tier.value,
        "breakdown": {
            name: {
                "score": dimension.score,
                "weight": dimension.weight,
                "factors": list(dimension.factors),
            }
            for name, dimension in quality.breakdown.items()
        },
        "recommendations": list(quality.recommendations),
        "warnings": list(quality.warnings),
    }


def _quality_from_dict(data: dict[str, Any] | None) -> QualityScore | None:
    if data is None:
        return None
    return QualityScore(
        score=float(data["score"]),
        tier=QualityTier(data["tier"]),
        breakdown={
            name: DimensionScore(
                score=float(item["score"]),
                weight=float(item["weight"]),
                factors=tuple(item.get("factors") or ()),
            )
            for name, item in (data.get("breakdown") or {}).items()
        },
        recommendations=tuple(data.get("recommendations") or ()),
        warnings=tuple(data.get("warnings") or ()),
    )


def provenance_link_to_dict(link: ProvenanceLink) -> dict[str, Any]:
    return {
        "raw_event_id": str(link.raw_event_id),
        "provider": link.provider,
        "provider_event_id": link.provider_event_id,
        "discovered_at": _iso(link.discovered_at),
    }


def event_to_dict(event: NormalizedEvent) -> dict[str, Any]:
    """Full, JSON-safe snapshot of a canonical event."""
    return {
        "id": str(event.id) if event.id else None,
        "version": event.version,
        "title": event.title,
        "description": event.description,
        "start_at": _iso(event.start_at),
        "end_at": _iso(event.end_at),
        "timezone": event.timezone,
        "venue": venue_to_dict(event.venue),
        "address": address_to_dict(event.address),
        "coordinates": coordinates_to_dict(event.coordinates),
        "category": event.category.value,
        "tags": list(event.tags),
        "price": _price_to_dict(event.price),
        "media": list(event.media),
        "url": event.url,
        "email": event.email,
        "phone": event.phone,
        "provenance": [provenance_link_to_dict(link) for link in event.provenance],
        "field_provenance": {
            key: {
                "confidence": item.confidence.value,
                "origin": item.origin,
                "verified_at": _iso(item.verified_at),
            }
            for key, item in event.field_provenance.items()
        },
        "warnings": [
            {"field": item.field, "issue": item.issue, "stage": item.stage}
            for item in event.warnings
        ],
        "classification_source": event.classification_source,
        "source_reputation": event.source_reputation,
        "quality": _quality_to_dict(event.quality),
    }


def event_from_dict(data: dict[str, Any]) -> NormalizedEvent:
    price = data.get("price")
    return NormalizedEvent(
        title=data["title"],
        description=data.get("description"),
        start_at=_parse_datetime(data.get("start_at")),
        end_at=_parse_datetime(data.get("end_at")),
        timezone=data.get("timezone"),
        venue=venue_from_dict(data.get("venue")),
        address=address_from_dict(data.get("address")),
        coordinates=coordinates_from_dict(data.get("coordinates")),
        category=Category(data.get("category") or Category.UNCATEGORIZED.value),
        tags=list(data.get("tags") or []),
        price=PriceRange(**price) if price is not None else None,
        media=list(data.get("media") or []),
        url=data.get("url"),
        email=data.get("email"),
        phone=data.get("phone"),
        provenance=[
            ProvenanceLink(
                raw_event_id=UUID(item["raw_event_id"]),
                provider=item["provider"],
                provider_event_id=item["provider_event_id"],
                discovered_at=datetime.fromisoformat(item["discovered_at"]),
            )
            for item in data.get("provenance") or []
        ],
        field_provenance={
            key: FieldProvenance(
                confidence=FieldConfidence(item["confidence"]),
                origin=item["origin"],
                verified_at=datetime.fromisoformat(item["verified_at"]),
            )
            for key, item in (data.get("field_provenance") or {}).items()
        },
        warnings=[
            FieldWarning(field=item["field"], issue=item["issue"], stage=item.get("stage", ""))
            for item in data.get("warnings") or []
        ],
        classification_source=data.get("classification_source"),
        source_reputation=float(data.get("source_reputation", 0.5)),
        quality=_quality_from_dict(data.get("quality")),
        id=_uuid(data.get("id")),
        version=int(data.get("version", 0)),
    )


def raw_event_from_dict(data: dict[str, Any]) -> RawEvent:
    discovered_at = _parse_datetime(data["discovered_at"])
    assert discovered_at is not None  # nosec B101
    return RawEvent(
        provider=data["provider"],
        provider_event_id=data["provider_event_id"],
        payload=dict(data.get("payload") or {}),
        discovered_at=discovered_at,
        descriptor=dict(data.get("descriptor") or {}),
    )


def merge_record_to_dict(record: MergeRecord) -> dict[str, Any]:
    return {
        "canonical_id": str(record.canonical_id),
        "incoming_raw_event_ids": [str(item) for item in record.incoming_raw_event_ids],
        "decided_at": _iso(record.decided_at),
        "similarity": dict(record.similarity),
        "decisions": dict(record.decisions),
    }
