"""
In-process `EventStore` with the same conditional-write semantics as PostgreSQL.

Used for local runs without a database and throughout the tests. Every value
crossing the boundary is deep-copied so callers never share state with the
store.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from src.core.domain import (
    Fingerprint,
    IngestionJob,
    JobStatus,
    MergeRecord,
    NormalizedEvent,
    RawEvent,
    Venue,
    utc_now,
)
from src.core.errors import PersistenceUnavailableError, VersionConflictError
from src.processing.deduplicator import Deduplicator, venue_bucket
from src.storage.repository import FINGERPRINT_CANDIDATE_LIMIT


class InMemoryEventStore:
    """Dictionary-backed store; a single lock makes each operation atomic."""

    def __init__(self, *, deduplicator: Deduplicator | None = None) -> None:
        self._fingerprint_for = (deduplicator or Deduplicator()).fingerprint
        self._lock = asyncio.Lock()
        self.raw_events: dict[UUID, RawEvent] = {}
        self.canonical_events: dict[UUID, NormalizedEvent] = {}
        self.fingerprints: dict[UUID, Fingerprint] = {}
        self.links: dict[UUID, UUID] = {}
        self.merge_records: list[MergeRecord] = []
        self.venues: dict[UUID, Venue] = {}
        self.jobs: dict[UUID, IngestionJob] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            msg = "Event store is unavailable"
            raise PersistenceUnavailableError(msg)

    async def ping(self) -> None:
        self._check()

    async def save_raw_event(self, raw: RawEvent) -> tuple[UUID, bool]:
        async with self._lock:
            self._check()
            if raw.id in self.raw_events:
                return (raw.id, False)
            self.raw_events[raw.id] = copy.deepcopy(raw)
            return (raw.id, True)

    async def get_raw_events(self, raw_event_ids: Sequence[UUID]) -> list[RawEvent]:
        self._check()
        return [
            copy.deepcopy(self.raw_events[raw_id])
            for raw_id in raw_event_ids
            if raw_id in self.raw_events
        ]

    async def find_unlinked_raw_events(self, raw_event_ids: Sequence[UUID]) -> list[UUID]:
        self._check()
        return [raw_id for raw_id in raw_event_ids if raw_id not in self.links]

    async def find_by_provenance(self, raw_event_ids: Sequence[UUID]) -> NormalizedEvent | None:
        self._check()
        canonical_ids = sorted(
            {self.links[raw_id] for raw_id in raw_event_ids if raw_id in self.links},
            key=str,
        )
        if not canonical_ids:
            return None
        return copy.deepcopy(self.canonical_events[canonical_ids[0]])

    async def find_fingerprint_candidates(
        self,
        fingerprint: Fingerprint,
        *,
        window_days: int,
    ) -> list[NormalizedEvent]:
        self._check()
        if not fingerprint.title_bucket:
            return []
        matches: list[UUID] = []
        for event_id, stored in self.fingerprints.items():
            if not stored.title_bucket:
                continue
            if fingerprint.event_date is None:
                if stored.event_date is None and stored.venue_bucket == fingerprint.venue_bucket:
                    matches.append(event_id)
                continue
            if stored.event_date is None:
                continue
            if abs(stored.event_date - fingerprint.event_date) <= timedelta(days=window_days):
                matches.append(event_id)
        matches.sort(key=str)
        return [
            copy.deepcopy(self.canonical_events[event_id])
            for event_id in matches[:FINGERPRINT_CANDIDATE_LIMIT]
        ]

    async def upsert_canonical_event(
        self,
        event: NormalizedEvent,
        *,
        expected_version: int | None,
    ) -> UUID:
        if event.id is None:
            msg = "Canonical events must carry an id before they are written"
            raise ValueError(msg)
        async with self._lock:
            self._check()
            current = self.canonical_events.get(event.id)
            if expected_version is None:
                if current is not None:
                    msg = f"Canonical event {event.id} already exists"
                    raise VersionConflictError(msg)
                claimed = [
                    link.raw_event_id
                    for link in event.provenance
                    if self.links.get(link.raw_event_id, event.id) != event.id
                ]
                if claimed:
                    msg = f"Raw events already linked to another canonical event: {claimed}"
                    raise VersionConflictError(msg)
            elif current is None or current.version != expected_version:
                msg = f"Canonical event {event.id} changed since version {expected_version}"
                raise VersionConflictError(msg)

            stored = copy.deepcopy(event)
            stored.version = 1 if expected_version is None else expected_version + 1
            self.canonical_events[event.id] = stored
            self.fingerprints[event.id] = self._fingerprint_for(stored)
            for link in stored.provenance:
                self.links.setdefault(link.raw_event_id, event.id)
            return event.id

    async def get_canonical_event(self, event_id: UUID) -> NormalizedEvent | None:
        self._check()
        event = self.canonical_events.get(event_id)
        return copy.deepcopy(event) if event is not None else None

    async def list_canonical_events(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        category: str | None = None,
        tier: str | None = None,
    ) -> list[NormalizedEvent]:
        self._check()
        events = [
            event
            for event in self.canonical_events.values()
            if (category is None or event.category.value == category)
            and (tier is None or (event.quality is not None and event.quality.tier.value == tier))
        ]
        events.sort(
            key=lambda item: (
                item.start_at is None,
                item.start_at.timestamp() if item.start_at else 0.0,
                str(item.id),
            )
        )
        return [copy.deepcopy(event) for event in events[offset : offset + limit]]

    async def record_merge(self, record: MergeRecord) -> None:
        async with self._lock:
            self._check()
            self.merge_records.append(copy.deepcopy(record))

    async def list_merge_records(self, canonical_id: UUID) -> list[MergeRecord]:
        self._check()
        return [
            copy.deepcopy(record)
            for record in self.merge_records
            if record.canonical_id == canonical_id
        ]

    async def find_venue_candidates(
        self,
        *,
        bucket: str | None,
        provider_ids: dict[str, str],
    ) -> list[Venue]:
        self._check()
        found = [
            venue
            for venue in self.venues.values()
            if (bucket and venue_bucket(venue.name) == bucket)
            or any(venue.provider_ids.get(key) == value for key, value in provider_ids.items())
        ]
        found.sort(key=lambda item: str(item.id))
        return [copy.deepcopy(venue) for venue in found]

    async def upsert_venue(self, venue: Venue) -> UUID:
        if venue.id is None:
            msg = "Venues must carry an id before they are written"
            raise ValueError(msg)
        async with self._lock:
            self._check()
            stored = copy.deepcopy(venue)
            previous = self.venues.get(venue.id)
            if previous is not None:
                stored.provider_ids = dict(
                    sorted({**previous.provider_ids, **stored.provider_ids}.items())
                )
            self.venues[venue.id] = stored
            return venue.id

    async def enqueue_job(self, job: IngestionJob) -> UUID:
        async with self._lock:
            self._check()
            stored = copy.deepcopy(job)
            stored.id = stored.id or uuid4()
            self.jobs[stored.id] = stored
            return stored.id

    async def claim_next_job(self, worker_id: str) -> IngestionJob | None:
        async with self._lock:
            self._check()
            now = utc_now()
            pending = [
                job
                for job in self.jobs.values()
                if job.status == JobStatus.PENDING and job.available_at <= now
            ]
            if not pending:
                return None
            job = min(pending, key=lambda item: (-item.priority, item.created_at, str(item.id)))
            job.status = JobStatus.RUNNING
            job.worker_id = worker_id
            job.attempts += 1
            job.started_at = now
            job.updated_at = now
            job.finished_at = None
            return copy.deepcopy(job)

    async def mark_job_status(
        self,
        job_id: UUID,
        status: JobStatus,
        *,
        error: str | None = None,
        reason: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> None:
        async with self._lock:
            self._check()
            job = self.jobs.get(job_id)
            if job is None:
                return
            now = utc_now()
            job.status = status
            job.updated_at = now
            if status.is_terminal:
                job.finished_at = now
            if error is not None:
                job.last_error = error
                job.last_error_reason = reason
            if result is not None:
                job.result = copy.deepcopy(result)

    async def get_job(self, job_id: UUID) -> IngestionJob | None:
        self._check()
        job = self.jobs.get(job_id)
        return copy.deepcopy(job) if job is not None else None

    async def requeue_job(
        self,
        job_id: UUID,
        *,
        available_at: datetime,
        error: str | None = None,
        reason: str | None = None,
    ) -> None:
        async with self._lock:
            self._check()
            job = self.jobs.get(job_id)
            if job is None:
                return
            job.status = JobStatus.PENDING
            job.worker_id = None
            job.available_at = available_at
            job.last_error = error
            job.last_error_reason = reason
            job.updated_at = utc_now()

    async def purge_jobs(self, *, finished_before: datetime) -> int:
        async with self._lock:
            self._check()
            expired = [
                job_id
                for job_id, job in self.jobs.items()
                if job.status.is_terminal
                and job.finished_at is not None
                and job.finished_at < finished_before
            ]
            for job_id in expired:
                del self.jobs[job_id]
            return len(expired)

    async def find_stale_running_jobs(self, *, started_before: datetime) -> list[IngestionJob]:
        self._check()
        stale = [
            job
            for job in self.jobs.values()
            if job.status == JobStatus.RUNNING
            and job.started_at is not None
            and job.started_at <= started_before
        ]
        stale.sort(key=lambda item: item.started_at or item.created_at)
        return [copy.deepcopy(job) for job in stale]

    async def count_jobs_by_status(self) -> dict[str, int]:
        self._check()
        counts = {status.value: 0 for status in JobStatus}
        for job in self.jobs.values():
            counts[job.status.value] += 1
        return counts
