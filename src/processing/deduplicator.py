"""
Identity resolution for normalized events and venues.

Each incoming event gets a `Fingerprint` used only to look up merge
candidates. A candidate matches when the start times fall within the date
window, precise coordinates (when both sides have them) lie within the
configured radius, and the fuzzy title similarity clears its threshold. The
title threshold is stricter when neither coordinates nor venue names can
corroborate the match.

Merging is a pure function. For every attribute group the side with the
greater `(has_value, confidence rank, verified_at, origin, value)` key wins,
which is a total order, so the result does not depend on which side was the
canonical one or on arrival order. Discarded values are kept in the
`MergeRecord` for audit.
"""

from __future__ import annotations

import copy
import hashlib
import json
import math
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, date, datetime
from difflib import SequenceMatcher
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from uuid import NAMESPACE_URL, UUID, uuid5

import structlog

from src.core.config import settings
from src.core.domain import (
    Category,
    Coordinates,
    FieldProvenance,
    FieldWarning,
    Fingerprint,
    MergeRecord,
    NormalizedEvent,
    ProvenanceLink,
    Venue,
    utc_now,
)
from src.core.errors import VersionConflictError
from src.core.observability import record_dedup_decision

if TYPE_CHECKING:
    from src.storage.repository import EventStore

logger = structlog.get_logger(__name__)

STAGE = "dedup"
PRECISE_COORDINATE_CONFIDENCE = 0.5
EARTH_RADIUS_METERS = 6_371_000.0

_TITLE_STOPWORDS = frozenset(
    {
        "the", "a", "an", "at", "presents", "featuring", "feat", "ft", "with",
        "live", "concert", "show", "event", "and",
    }
)
_VENUE_STOPWORDS = frozenset(
    {
        "the", "at", "venue", "hall", "center", "centre", "theatre", "theater",
        "club", "bar", "pub", "restaurant", "and",
    }
)
_NON_WORD_RE = re.compile(r"[^\w\s]+")

# Attributes decided together; the first name's provenance picks the winner.
_FIELD_GROUPS: tuple[tuple[str, ...], ...] = (
    ("title",),
    ("description",),
    ("start_at", "end_at"),
    ("timezone",),
    ("venue",),
    ("address",),
    ("coordinates",),
    ("category",),
    ("price", "currency"),
    ("url",),
    ("email",),
    ("phone",),
    ("tags",),
    ("media",),
)
_UNION_FIELDS = frozenset({"tags", "media"})
_WARNING_FIELD_ALIASES = {"start": "start_at", "end": "end_at"}
_EPOCH = datetime.min.replace(tzinfo=UTC)


def normalize_title(title: str | None) -> str:
    """Lowercase, punctuation-free title without filler words ("the", "live", ...)."""
    if not title:
        return ""
    text = _NON_WORD_RE.sub(" ", title.lower().replace("@", " at ").replace("&", " and "))
    return " ".join(token for token in text.split() if token not in _TITLE_STOPWORDS)


def normalize_venue_name(name: str | None) -> str:
    if not name:
        return ""
    text = _NON_WORD_RE.sub(" ", name.lower().replace("&", " and "))
    return " ".join(token for token in text.split() if token not in _VENUE_STOPWORDS)


def text_similarity(left: str, right: str) -> float:
    """Best of character-sequence and token-sorted similarity, in [0, 1]."""
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    sequence = SequenceMatcher(None, left, right).ratio()
    token_sorted = SequenceMatcher(
        None,
        " ".join(sorted(set(left.split()))),
        " ".join(sorted(set(right.split()))),
    ).ratio()
    return round(max(sequence, token_sorted), 4)


def haversine_meters(a: Coordinates, b: Coordinates) -> float:
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(b.lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


def precise_coordinates(coordinates: Coordinates | None) -> Coordinates | None:
    """Coordinates good enough to corroborate identity; centroids are not."""
    if coordinates is None or coordinates.confidence < PRECISE_COORDINATE_CONFIDENCE:
        return None
    return coordinates


def venue_bucket(name: str | None) -> str | None:
    tokens = normalize_venue_name(name).split()
    return tokens[0] if tokens else None


def title_bucket(title_key: str) -> str:
    return " ".join(sorted(set(title_key.split())))


def canonical_event_id(event: NormalizedEvent) -> UUID:
    """Stable id derived from the earliest contributing raw event."""
    if not event.provenance:
        msg = "Canonical events need at least one provenance link"
        raise ValueError(msg)
    first = min(str(link.raw_event_id) for link in event.provenance)
    return uuid5(NAMESPACE_URL, f"canonical-event:{first}")


def venue_id(venue: Venue) -> UUID:
    if venue.provider_ids:
        provider, native_id = min(venue.provider_ids.items())
        return uuid5(NAMESPACE_URL, f"venue:{provider}:{native_id}")
    locality = venue.address.locality if venue.address and venue.address.locality else ""
    return uuid5(NAMESPACE_URL, f"venue-name:{normalize_venue_name(venue.name)}:{locality.lower()}")


class DedupAction(StrEnum):
    INSERTED = "inserted"
    MERGED = "merged"
    UNCHANGED = "unchanged"


@dataclass(slots=True, frozen=True)
class MatchScore:
    title: float
    venue: float | None = None
    distance_meters: float | None = None
    hours_apart: float | None = None

    def rank_key(self) -> tuple[float, float, float]:
        distance = self.distance_meters if self.distance_meters is not None else math.inf
        return (-self.title, -(self.venue or 0.0), distance)

    def as_dict(self) -> dict[str, float]:
        values = {
            "title": self.title,
            "venue": self.venue,
            "distance_meters": self.distance_meters,
            "hours_apart": self.hours_apart,
        }
        return {key: round(value, 4) for key, value in values.items() if value is not None}


@dataclass(slots=True)
class DedupOutcome:
    action: DedupAction
    canonical_id: UUID
    event: NormalizedEvent
    merge_record: MergeRecord | None = None
    attempts: int = 1


@dataclass(slots=True)
class _Side:
    event: NormalizedEvent
    label: str
    keys: dict[str, tuple[Any, ...]] = field(default_factory=dict)


class Deduplicator:
    """Fingerprint lookup plus a deterministic, auditable merge."""

    def __init__(
        self,
        *,
        date_window_hours: float | None = None,
        radius_meters: float | None = None,
        title_similarity: float | None = None,
        venue_similarity: float | None = None,
        strict_title_similarity: float | None = None,
        coordinate_precision: int | None = None,
        max_retries: int | None = None,
    ) -> None:
        self.date_window_hours = date_window_hours or settings.DEDUP_DATE_WINDOW_HOURS
        self.radius_meters = radius_meters or settings.DEDUP_RADIUS_METERS
        self.title_similarity = (
            settings.DEDUP_TITLE_SIMILARITY if title_similarity is None else title_similarity
        )
        self.venue_similarity = (
            settings.DEDUP_VENUE_SIMILARITY if venue_similarity is None else venue_similarity
        )
        self.strict_title_similarity = (
            settings.DEDUP_STRICT_TITLE_SIMILARITY
            if strict_title_similarity is None
            else strict_title_similarity
        )
        self.coordinate_precision = coordinate_precision or settings.DEDUP_COORDINATE_PRECISION
        self.max_retries = max_retries or settings.DEDUP_MAX_MERGE_RETRIES
        for name, value in (
            ("title_similarity", self.title_similarity),
            ("venue_similarity", self.venue_similarity),
            ("strict_title_similarity", self.strict_title_similarity),
        ):
            if not 0 <= value <= 1:
                msg = f"{name} must be between 0 and 1"
                raise ValueError(msg)

    @property
    def window_days(self) -> int:
        return max(1, math.ceil(self.date_window_hours / 24))

    def fingerprint(self, event: NormalizedEvent) -> Fingerprint:
        title_key = "" if event.has_placeholder_title else normalize_title(event.title)
        venue_key = normalize_venue_name(event.venue.name) if event.venue is not None else ""
        coordinates = precise_coordinates(event.coordinates)
        return Fingerprint(
            title_bucket=title_bucket(title_key),
            event_date=event.start_at.astimezone(UTC).date() if event.start_at else None,
            lat_bucket=(
                round(coordinates.lat, self.coordinate_precision) if coordinates else None
            ),
            lng_bucket=(
                round(coordinates.lng, self.coordinate_precision) if coordinates else None
            ),
            venue_bucket=venue_bucket(event.venue.name) if event.venue is not None else None,
            title_key=title_key,
            venue_key=venue_key,
        )

    def match(self, incoming: NormalizedEvent, candidate: NormalizedEvent) -> MatchScore | None:
        """Similarity of two events, or None when they are not the same occurrence."""
        if incoming.has_placeholder_title or candidate.has_placeholder_title:
            return None

        hours_apart: float | None = None
        if incoming.start_at is not None and candidate.start_at is not None:
            hours_apart = abs((incoming.start_at - candidate.start_at).total_seconds()) / 3600
            if hours_apart > self.date_window_hours:
                return None
        elif incoming.start_at is not None or candidate.start_at is not None:
            return None

        distance: float | None = None
        left_coords = precise_coordinates(incoming.coordinates)
        right_coords = precise_coordinates(candidate.coordinates)
        if left_coords is not None and right_coords is not None:
            distance = haversine_meters(left_coords, right_coords)
            if distance > self.radius_meters:
                return None

        venue_score: float | None = None
        if incoming.venue is not None and candidate.venue is not None:
            venue_score = text_similarity(
                normalize_venue_name(incoming.venue.name),
                normalize_venue_name(candidate.venue.name),
            )
            if _shares_provider_id(incoming.venue, candidate.venue):
                venue_score = 1.0
            if distance is None and venue_score < self.venue_similarity:
                return None

        corroborated = distance is not None or (
            venue_score is not None and venue_score >= self.venue_similarity
        )
        threshold = self.title_similarity if corroborated else self.strict_title_similarity
        title_score = text_similarity(normalize_title(incoming.title), normalize_title(candidate.title))
        if title_score < threshold:
            return None
        return MatchScore(
            title=title_score,
            venue=venue_score,
            distance_meters=distance,
            hours_apart=hours_apart,
        )

    def best_candidate(
        self,
        event: NormalizedEvent,
        candidates: list[NormalizedEvent],
    ) -> tuple[NormalizedEvent, MatchScore] | None:
        scored = [
            (candidate, score)
            for candidate in candidates
            if (score := self.match(event, candidate)) is not None
        ]
        if not scored:
            return None
        return min(scored, key=lambda pair: (pair[1].rank_key(), str(pair[0].id)))

    def merge(
        self,
        canonical: NormalizedEvent,
        incoming: NormalizedEvent,
        *,
        match: MatchScore | None = None,
        decided_at: datetime | None = None,
    ) -> tuple[NormalizedEvent, MergeRecord]:
        """
        Merge `incoming` into `canonical` without mutating either.

        The merged state depends only on the two inputs, never on which one
        was already canonical. Id and version stay with `canonical`.
        """
        left = _Side(event=canonical, label="canonical")
        right = _Side(event=incoming, label="incoming")
        merged = copy.deepcopy(canonical)
        merged.field_provenance = {}
        decisions: dict[str, dict[str, Any]] = {}
        winners: dict[str, _Side] = {}

        for group in _FIELD_GROUPS:
            lead = group[0]
            winner, loser = _pick(left, right, lead)
            for attribute in group:
                winners[attribute] = winner
                provenance = winner.event.field_provenance.get(attribute)
                if provenance is not None:
                    merged.field_provenance[attribute] = provenance
                if hasattr(merged, attribute):
                    setattr(merged, attribute, copy.deepcopy(getattr(winner.event, attribute)))

            if lead in _UNION_FIELDS:
                setattr(merged, lead, _union_values(winner.event, loser.event, lead))
            elif lead == "venue":
                merged.venue = self._merge_venue_values(winner.event.venue, loser.event.venue)

            loser_value = getattr(loser.event, lead)
            if lead not in _UNION_FIELDS and _value_token(loser_value) != _value_token(
                getattr(winner.event, lead)
            ):
                decisions[lead] = _decision(winner, loser, lead)

        for key in sorted(set(canonical.field_provenance) | set(incoming.field_provenance)):
            if key in merged.field_provenance or key in winners:
                continue
            options = [
                provenance
                for provenance in (
                    canonical.field_provenance.get(key),
                    incoming.field_provenance.get(key),
                )
                if provenance is not None
            ]
            merged.field_provenance[key] = max(options, key=FieldProvenance.sort_key)

        merged.classification_source = winners["category"].event.classification_source
        merged.provenance = _union_provenance(canonical.provenance, incoming.provenance)
        merged.warnings = _merge_warnings(canonical, incoming, winners)
        merged.source_reputation = max(canonical.source_reputation, incoming.source_reputation)
        merged.quality = None

        record = MergeRecord(
            canonical_id=canonical.id or canonical_event_id(canonical),
            incoming_raw_event_ids=sorted(
                (link.raw_event_id for link in incoming.provenance),
                key=str,
            ),
            decided_at=decided_at or utc_now(),
            similarity=match.as_dict() if match is not None else {},
            decisions=decisions,
        )
        return merged, record

    def _merge_venue_values(self, winner: Venue | None, loser: Venue | None) -> Venue | None:
        if winner is None or loser is None:
            return copy.deepcopy(winner or loser)
        if not self.venues_match(winner, loser):
            return copy.deepcopy(winner)
        return merge_venues(winner, loser)

    def venues_match(self, left: Venue, right: Venue) -> bool:
        """Same physical venue: shared provider id, or similar name nearby."""
        if _shares_provider_id(left, right):
            return True
        similarity = text_similarity(normalize_venue_name(left.name), normalize_venue_name(right.name))
        if similarity < self.venue_similarity:
            return False
        left_coords = precise_coordinates(left.coordinates)
        right_coords = precise_coordinates(right.coordinates)
        if left_coords is not None and right_coords is not None:
            return haversine_meters(left_coords, right_coords) <= self.radius_meters
        left_locality = _venue_locality(left)
        right_locality = _venue_locality(right)
        if left_locality and right_locality:
            return left_locality == right_locality
        return similarity >= self.strict_title_similarity

    async def resolve_venue(self, venue: Venue, store: EventStore) -> Venue:
        """Attach `venue` to a stored venue record, merging provider ids."""
        candidates = await store.find_venue_candidates(
            bucket=venue_bucket(venue.name),
            provider_ids=dict(venue.provider_ids),
        )
        for candidate in sorted(candidates, key=lambda item: str(item.id)):
            if self.venues_match(venue, candidate):
                merged = merge_venues(candidate, venue)
                merged.id = candidate.id
                await store.upsert_venue(merged)
                return merged
        resolved = copy.deepcopy(venue)
        resolved.id = venue_id(resolved)
        await store.upsert_venue(resolved)
        return resolved

    async def deduplicate(
        self,
        event: NormalizedEvent,
        store: EventStore,
        *,
        finalize: Callable[[NormalizedEvent], Awaitable[None] | None] | None = None,
    ) -> DedupOutcome:
        """
        Insert `event` as a new canonical event or merge it into a match.

        The lookup and the write are retried together when the conditional
        write loses to a concurrent writer. `finalize` runs on the state about
        to be written (quality scoring).
        """
        if event.venue is not None:
            event.venue = await self.resolve_venue(event.venue, store)
        fingerprint = self.fingerprint(event)
        raw_ids = [link.raw_event_id for link in event.provenance]

        for attempt in range(1, self.max_retries + 1):
            existing = await store.find_by_provenance(raw_ids)
            match: MatchScore | None = None
            if existing is None:
                candidates = await store.find_fingerprint_candidates(
                    fingerprint,
                    window_days=self.window_days,
                )
                best = self.best_candidate(event, candidates)
                if best is not None:
                    existing, match = best

            if existing is None:
                created = canonicalize(copy.deepcopy(event))
                created.id = canonical_event_id(created)
                created.version = 0
                await _run_finalize(finalize, created)
                try:
                    canonical_id = await store.upsert_canonical_event(created, expected_version=None)
                except VersionConflictError:
                    logger.info("Canonical insert raced; retrying lookup", attempt=attempt)
                    continue
                created.id = canonical_id
                created.version = 1
                record_dedup_decision(decision=DedupAction.INSERTED.value)
                return DedupOutcome(
                    action=DedupAction.INSERTED,
                    canonical_id=canonical_id,
                    event=created,
                    attempts=attempt,
                )

            merged, record = self.merge(existing, event, match=match)
            merged = canonicalize(merged)
            if _state_token(merged) == _state_token(existing):
                record_dedup_decision(decision=DedupAction.UNCHANGED.value)
                assert existing.id is not None  # nosec B101
                return DedupOutcome(
                    action=DedupAction.UNCHANGED,
                    canonical_id=existing.id,
                    event=existing,
                    attempts=attempt,
                )

            await _run_finalize(finalize, merged)
            try:
                canonical_id = await store.upsert_canonical_event(
                    merged,
                    expected_version=existing.version,
                )
            except VersionConflictError:
                logger.info(
                    "Merge lost compare-and-swap; retrying",
                    canonical_id=str(existing.id),
                    attempt=attempt,
                )
                continue
            merged.version = existing.version + 1
            await store.record_merge(record)
            record_dedup_decision(decision=DedupAction.MERGED.value)
            logger.debug(
                "Merged event into canonical",
                canonical_id=str(canonical_id),
                similarity=record.similarity,
                decided_fields=sorted(record.decisions),
            )
            return DedupOutcome(
                action=DedupAction.MERGED,
                canonical_id=canonical_id,
                event=merged,
                merge_record=record,
                attempts=attempt,
            )

        msg = f"Could not apply merge decision after {self.max_retries} attempts"
        raise VersionConflictError(msg)


def merge_venues(left: Venue, right: Venue) -> Venue:
    """Union of provider ids; missing details are filled from the other side."""
    merged = copy.deepcopy(left)
    merged.provider_ids = dict(sorted({**right.provider_ids, **left.provider_ids}.items()))
    if merged.coordinates is None or (
        right.coordinates is not None and right.coordinates.confidence > merged.coordinates.confidence
    ):
        merged.coordinates = right.coordinates
    if merged.address is None or merged.address.is_empty:
        merged.address = copy.deepcopy(right.address)
    merged.timezone = merged.timezone or right.timezone
    if merged.id is None:
        merged.id = right.id
    return merged


def canonicalize(event: NormalizedEvent) -> NormalizedEvent:
    """Stable ordering for list-valued state so equal events compare equal."""
    event.tags = sorted(set(event.tags))
    event.provenance = _union_provenance(event.provenance, [])
    event.warnings = sorted(set(event.warnings), key=_warning_key)
    event.field_provenance = dict(sorted(event.field_provenance.items()))
    return event


async def _run_finalize(
    finalize: Callable[[NormalizedEvent], Awaitable[None] | None] | None,
    event: NormalizedEvent,
) -> None:
    if finalize is None:
        return
    result = finalize(event)
    if result is not None:
        await result


def _shares_provider_id(left: Venue, right: Venue) -> bool:
    return any(
        right.provider_ids.get(provider) == native_id
        for provider, native_id in left.provider_ids.items()
    )


def _venue_locality(venue: Venue) -> str | None:
    if venue.address is None or not venue.address.locality:
        return None
    return venue.address.locality.strip().lower()


def _has_value(value: Any) -> bool:
    if value is None or value == [] or value == "":
        return False
    return value is not Category.UNCATEGORIZED


def _side_key(side: _Side, attribute: str) -> tuple[Any, ...]:
    cached = side.keys.get(attribute)
    if cached is not None:
        return cached
    value = getattr(side.event, attribute, None)
    provenance = side.event.field_provenance.get(attribute)
    if provenance is None:
        key: tuple[Any, ...] = (_has_value(value), -1, _EPOCH, "", _value_token(value))
    else:
        key = (
            _has_value(value),
            provenance.confidence.rank,
            provenance.verified_at,
            provenance.origin,
            _value_token(value),
        )
    side.keys[attribute] = key
    return key


def _pick(left: _Side, right: _Side, attribute: str) -> tuple[_Side, _Side]:
    if _side_key(right, attribute) > _side_key(left, attribute):
        return right, left
    return left, right


def _union_values(winner: NormalizedEvent, loser: NormalizedEvent, attribute: str) -> list[str]:
    winning = list(getattr(winner, attribute))
    if attribute == "tags":
        return sorted(set(winning) | set(getattr(loser, attribute)))
    extra = sorted(value for value in set(getattr(loser, attribute)) if value not in winning)
    return winning + extra


def _union_provenance(
    left: list[ProvenanceLink],
    right: list[ProvenanceLink],
) -> list[ProvenanceLink]:
    """One link per raw event; the earliest sighting wins regardless of side."""
    links: dict[UUID, ProvenanceLink] = {}
    for link in sorted([*left, *right], key=_provenance_order):
        links.setdefault(link.raw_event_id, link)
    return list(links.values())


def _provenance_order(link: ProvenanceLink) -> tuple[datetime, str, str]:
    return (link.discovered_at, link.provider, link.provider_event_id)


def _warning_key(warning: FieldWarning) -> tuple[str, str, str]:
    return (warning.field, warning.issue, warning.stage)


def _merge_warnings(
    canonical: NormalizedEvent,
    incoming: NormalizedEvent,
    winners: dict[str, _Side],
) -> list[FieldWarning]:
    """Per-field warnings follow the winning side; the rest are unioned."""
    kept: set[FieldWarning] = set()
    for event in (canonical, incoming):
        for warning in event.warnings:
            attribute = _WARNING_FIELD_ALIASES.get(warning.field, warning.field)
            winner = winners.get(attribute)
            if winner is None or winner.event is event:
                kept.add(warning)
    return sorted(kept, key=_warning_key)


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, list | tuple):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if is_dataclass(value) and not isinstance(value, type):
        return {item.name: _jsonable(getattr(value, item.name)) for item in fields(value)}
    return str(value)


def _value_token(value: Any) -> str:
    return json.dumps(_jsonable(value), sort_keys=True, default=str)


def _decision(winner: _Side, loser: _Side, attribute: str) -> dict[str, Any]:
    kept = winner.event.field_provenance.get(attribute)
    discarded = loser.event.field_provenance.get(attribute)
    return {
        "kept_from": winner.label,
        "kept_origin": kept.origin if kept else None,
        "kept_confidence": kept.confidence.value if kept else None,
        "discarded_origin": discarded.origin if discarded else None,
        "discarded_confidence": discarded.confidence.value if discarded else None,
        "discarded_value": _jsonable(getattr(loser.event, attribute)),
    }


def _state_token(event: NormalizedEvent) -> str:
    state = {
        name: _jsonable(getattr(event, name))
        for name in (item.name for item in fields(NormalizedEvent))
        if name not in {"quality", "version", "id"}
    }
    return hashlib.sha256(_value_token(state).encode("utf-8")).hexdigest()

