from __future__ import annotations

import dataclasses
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from src.core.domain import (
    Category,
    Coordinates,
    FieldConfidence,
    NormalizedEvent,
    PriceRange,
    ProvenanceLink,
    Venue,
    raw_event_id,
)
from src.core.errors import VersionConflictError
from src.processing.deduplicator import (
    DedupAction,
    Deduplicator,
    canonical_event_id,
    canonicalize,
    haversine_meters,
    normalize_title,
    normalize_venue_name,
    text_similarity,
)
from src.storage.memory_store import InMemoryEventStore

pytestmark = pytest.mark.unit

START = datetime(2026, 5, 1, 20, 0, tzinfo=UTC)
BLUE_NOTE = Coordinates(lat=40.7306, lng=-74.0003)
ASSERTED = FieldConfidence.PROVIDER_ASSERTED


def _event(
    provider: str,
    provider_event_id: str,
    *,
    title: str = "Jazz Night",
    start_at: datetime | None = START,
    venue: str | None = "Blue Note",
    coordinates: Coordinates | None = BLUE_NOTE,
    discovered_at: datetime = datetime(2026, 4, 1, tzinfo=UTC),
    confidence: FieldConfidence = ASSERTED,
    **values: Any,
) -> NormalizedEvent:
    origin = f"{provider}:{provider_event_id}"
    event = NormalizedEvent(
        title="",
        provenance=[
            ProvenanceLink(
                raw_event_id=raw_event_id(provider, provider_event_id),
                provider=provider,
                provider_event_id=provider_event_id,
                discovered_at=discovered_at,
            )
        ],
    )
    attributes: dict[str, Any] = {
        "title": title,
        "start_at": start_at,
        "venue": (
            Venue(name=venue, provider_ids={provider: f"v-{provider_event_id}"}) if venue else None
        ),
        "coordinates": coordinates,
        **values,
    }
    for attribute, value in attributes.items():
        if value is None:
            continue
        event.set_field(
            attribute,
            value,
            confidence=confidence,
            origin=origin,
            verified_at=discovered_at,
        )
    return event


def _comparable(event: NormalizedEvent) -> NormalizedEvent:
    return dataclasses.replace(canonicalize(event), id=None, version=0, quality=None)


def test_title_and_venue_normalization_drop_filler_words() -> None:
    assert normalize_title("The Jazz Night @ Blue Note - LIVE!") == "jazz night blue note"
    assert normalize_venue_name("The Blue Note Jazz Club") == "blue note jazz"
    assert text_similarity("jazz night", "night jazz") == 1.0
    assert text_similarity("", "jazz") == 0.0


def test_haversine_distance_is_in_meters() -> None:
    nearby = Coordinates(lat=40.7307, lng=-74.0004)

    assert haversine_meters(BLUE_NOTE, BLUE_NOTE) == 0.0
    assert 10 < haversine_meters(BLUE_NOTE, nearby) < 20


def test_fingerprint_ignores_centroids_and_placeholder_titles() -> None:
    deduplicator = Deduplicator()
    event = _event(
        "eventbrite",
        "1",
        title="Untitled Event",
        coordinates=Coordinates(lat=40.71, lng=-74.0, confidence=0.3, source="centroid"),
    )
    event.record_provenance(
        "title",
        confidence=FieldConfidence.DEFAULTED,
        origin="eventbrite:1",
        verified_at=START,
    )

    fingerprint = deduplicator.fingerprint(event)

    assert fingerprint.title_bucket == ""
    assert fingerprint.lat_bucket is None
    assert fingerprint.venue_bucket == "blue"
    assert fingerprint.event_date == START.date()


def test_match_requires_date_window() -> None:
    deduplicator = Deduplicator()
    incoming = _event("eventbrite", "1", start_at=START + timedelta(days=10))

    assert deduplicator.match(incoming, _event("ticketmaster", "1")) is None


def test_match_uses_strict_title_threshold_without_corroboration() -> None:
    deduplicator = Deduplicator()
    centroid = Coordinates(lat=40.71, lng=-74.0, confidence=0.3, source="centroid")
    left = _event("ticketmaster", "1", title="jazz night", venue=None, coordinates=centroid)
    right = _event("eventbrite", "1", title="jazz might", venue=None, coordinates=centroid)

    assert deduplicator.match(left, right) is None

    left_precise = _event("ticketmaster", "2", title="jazz night", venue=None)
    right_precise = _event("eventbrite", "2", title="jazz might", venue=None)
    score = deduplicator.match(left_precise, right_precise)

    assert score is not None
    assert score.title == pytest.approx(0.9)
    assert score.distance_meters == 0.0


def test_match_rejects_distant_coordinates_and_unrelated_venues() -> None:
    deduplicator = Deduplicator()
    far = _event("eventbrite", "1", coordinates=Coordinates(lat=40.75, lng=-73.99))
    other_venue = _event("eventbrite", "2", venue="Madison Square Garden", coordinates=None)

    assert deduplicator.match(far, _event("ticketmaster", "1")) is None
    assert deduplicator.match(other_venue, _event("ticketmaster", "2", coordinates=None)) is None


def test_merge_keeps_higher_confidence_value_and_records_discarded_one() -> None:
    deduplicator = Deduplicator()
    canonical = _event("ticketmaster", "1", price=PriceRange(25.0, 40.0, "USD"))
    canonical.id = canonical_event_id(canonical)
    incoming = _event(
        "eventbrite",
        "9",
        title="JAZZ NIGHT - Live",
        start_at=START + timedelta(minutes=30),
        discovered_at=datetime(2026, 4, 2, tzinfo=UTC),
        confidence=FieldConfidence.DERIVED,
        description="An evening of standards.",
        category=Category.MUSIC,
    )

    merged, record = deduplicator.merge(canonical, incoming)

    assert merged.start_at == START
    assert merged.title == "Jazz Night"
    assert merged.description == "An evening of standards."
    assert merged.category == Category.MUSIC
    assert merged.price == PriceRange(25.0, 40.0, "USD")
    assert [link.provider for link in merged.provenance] == ["ticketmaster", "eventbrite"]
    assert merged.id == canonical.id
    assert record.canonical_id == canonical.id
    assert record.incoming_raw_event_ids == [raw_event_id("eventbrite", "9")]
    assert record.decisions["start_at"]["kept_from"] == "canonical"
    assert record.decisions["start_at"]["discarded_confidence"] == "derived"
    assert record.decisions["start_at"]["discarded_value"] == "2026-05-01T20:30:00+00:00"
    assert merged.venue is not None
    assert merged.venue.provider_ids == {"eventbrite": "v-9", "ticketmaster": "v-1"}


def test_merge_is_commutative() -> None:
    deduplicator = Deduplicator()
    first = _event("ticketmaster", "1", tags=["jazz"], url="https://tm.test/e/1")
    second = _event(
        "eventbrite",
        "9",
        discovered_at=datetime(2026, 4, 2, tzinfo=UTC),
        tags=["late night"],
        description="Standards and swing.",
        url="https://eb.test/e/9",
    )

    left, _record = deduplicator.merge(first, second)
    right, _record = deduplicator.merge(second, first)

    assert _comparable(left) == _comparable(right)
    assert left.url == "https://eb.test/e/9"
    assert left.tags == ["jazz", "late night"]


def test_merge_keeps_earliest_sighting_of_a_shared_raw_event() -> None:
    deduplicator = Deduplicator()
    first_seen = datetime(2026, 4, 2, tzinfo=UTC)
    canonical = _event("ticketmaster", "1")
    canonical.provenance.append(
        _event("eventbrite", "9", discovered_at=first_seen).provenance[0]
    )
    rediscovered = _event("eventbrite", "9", discovered_at=datetime(2026, 4, 5, tzinfo=UTC))

    left, _record = deduplicator.merge(canonical, rediscovered)
    right, _record = deduplicator.merge(rediscovered, canonical)

    for merged in (left, right):
        assert [link.key for link in merged.provenance] == ["ticketmaster:1", "eventbrite:9"]
        assert merged.provenance[1].discovered_at == first_seen


def test_canonical_id_is_derived_from_earliest_raw_event() -> None:
    event = _event("ticketmaster", "1")

    assert canonical_event_id(event) == canonical_event_id(_event("ticketmaster", "1"))
    with pytest.raises(ValueError, match="provenance"):
        canonical_event_id(NormalizedEvent(title="Orphan"))


@pytest.mark.asyncio
async def test_deduplicate_inserts_then_merges_duplicate() -> None:
    store = InMemoryEventStore()
    deduplicator = Deduplicator()

    inserted = await deduplicator.deduplicate(_event("ticketmaster", "1"), store)
    merged = await deduplicator.deduplicate(
        _event(
            "eventbrite",
            "9",
            title="Jazz Night!",
            start_at=START + timedelta(minutes=30),
            coordinates=Coordinates(lat=40.7307, lng=-74.0004),
            discovered_at=datetime(2026, 4, 2, tzinfo=UTC),
        ),
        store,
    )

    assert inserted.action == DedupAction.INSERTED
    assert inserted.event.version == 1
    assert merged.action == DedupAction.MERGED
    assert merged.canonical_id == inserted.canonical_id
    assert len(store.canonical_events) == 1
    stored = store.canonical_events[inserted.canonical_id]
    assert stored.version == 2
    assert len(stored.provenance) == 2
    assert len(await store.list_merge_records(inserted.canonical_id)) == 1
    assert len(store.venues) == 1


@pytest.mark.asyncio
async def test_deduplicate_keeps_events_ten_days_apart_separate() -> None:
    store = InMemoryEventStore()
    deduplicator = Deduplicator()

    await deduplicator.deduplicate(_event("ticketmaster", "1"), store)
    outcome = await deduplicator.deduplicate(
        _event("eventbrite", "9", start_at=START + timedelta(days=10)),
        store,
    )

    assert outcome.action == DedupAction.INSERTED
    assert len(store.canonical_events) == 2


@pytest.mark.asyncio
async def test_reprocessing_the_same_record_is_unchanged() -> None:
    store = InMemoryEventStore()
    deduplicator = Deduplicator()

    first = await deduplicator.deduplicate(_event("ticketmaster", "1"), store)
    again = await deduplicator.deduplicate(_event("ticketmaster", "1"), store)

    assert again.action == DedupAction.UNCHANGED
    assert again.canonical_id == first.canonical_id
    assert store.canonical_events[first.canonical_id].version == 1
    assert store.merge_records == []


@pytest.mark.asyncio
async def test_finalize_runs_on_state_about_to_be_written() -> None:
    store = InMemoryEventStore()
    seen: list[str] = []

    async def _finalize(event: NormalizedEvent) -> None:
        seen.append(event.title)
        event.source_reputation = 0.9

    outcome = await Deduplicator().deduplicate(_event("ticketmaster", "1"), store, finalize=_finalize)

    assert seen == ["Jazz Night"]
    assert store.canonical_events[outcome.canonical_id].source_reputation == 0.9


class _RacingStore(InMemoryEventStore):
    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts

    async def upsert_canonical_event(
        self,
        event: NormalizedEvent,
        *,
        expected_version: int | None,
    ):
        if self.conflicts:
            self.conflicts -= 1
            msg = "lost race"
            raise VersionConflictError(msg)
        return await super().upsert_canonical_event(event, expected_version=expected_version)


@pytest.mark.asyncio
async def test_deduplicate_retries_after_losing_conditional_write() -> None:
    store = _RacingStore(conflicts=1)

    outcome = await Deduplicator().deduplicate(_event("ticketmaster", "1"), store)

    assert outcome.action == DedupAction.INSERTED
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_deduplicate_gives_up_after_retry_budget() -> None:
    store = _RacingStore(conflicts=5)

    with pytest.raises(VersionConflictError, match="after 2 attempts"):
        await Deduplicator(max_retries=2).deduplicate(_event("ticketmaster", "1"), store)


def test_invalid_threshold_is_rejected() -> None:
    with pytest.raises(ValueError, match="title_similarity"):
        Deduplicator(title_similarity=1.5)
