"""
Persistence contract for the pipeline and its PostgreSQL implementation.

Canonical writes are conditional: inserts fail when the id (or any linked
raw event) already exists, updates compare-and-swap on `version`. Losers see
`VersionConflictError` and retry their lookup. Connection-level failures are
raised as `PersistenceUnavailableError` so callers can hold results instead of
dropping them.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, delete, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.domain import (
    Fingerprint,
    IngestionJob,
    JobStatus,
    JobType,
    MergeRecord,
    NormalizedEvent,
    RawEvent,
    Venue,
    utc_now,
)
from src.core.errors import PersistenceUnavailableError, VersionConflictError
from src.processing.deduplicator import venue_bucket
from src.storage.models import (
    CanonicalEventLink,
    CanonicalEventRecord,
    IngestionJobRecord,
    MergeRecordRow,
    RawEventRecord,
    VenueRecord,
)
from src.storage.serialization import (
    event_from_dict,
    event_to_dict,
    merge_record_to_dict,
    raw_event_from_dict,
    venue_from_dict,
    venue_to_dict,
)

logger = structlog.get_logger(__name__)

FINGERPRINT_CANDIDATE_LIMIT = 200


class EventStore(Protocol):
    """Everything the pipeline, scheduler and API need from persistence."""

    async def ping(self) -> None: ...

    async def save_raw_event(self, raw: RawEvent) -> tuple[UUID, bool]: ...

    async def get_raw_events(self, raw_event_ids: Sequence[UUID]) -> list[RawEvent]: ...

    async def find_unlinked_raw_events(self, raw_event_ids: Sequence[UUID]) -> list[UUID]: ...

    async def find_by_provenance(self, raw_event_ids: Sequence[UUID]) -> NormalizedEvent | None: ...

    async def find_fingerprint_candidates(
        self,
        fingerprint: Fingerprint,
        *,
        window_days: int,
    ) -> list[NormalizedEvent]: ...

    async def upsert_canonical_event(
        self,
        event: NormalizedEvent,
        *,
        expected_version: int | None,
    ) -> UUID: ...

    async def get_canonical_event(self, event_id: UUID) -> NormalizedEvent | None: ...

    async def list_canonical_events(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        category: str | None = None,
        tier: str | None = None,
    ) -> list[NormalizedEvent]: ...

    async def record_merge(self, record: MergeRecord) -> None: ...

    async def list_merge_records(self, canonical_id: UUID) -> list[MergeRecord]: ...

    async def find_venue_candidates(
        self,
        *,
        bucket: str | None,
        provider_ids: dict[str, str],
    ) -> list[Venue]: ...

    async def upsert_venue(self, venue: Venue) -> UUID: ...

    async def enqueue_job(self, job: IngestionJob) -> UUID: ...

    async def claim_next_job(self, worker_id: str) -> IngestionJob | None: ...

    async def mark_job_status(
        self,
        job_id: UUID,
        status: JobStatus,
        *,
        error: str | None = None,
        reason: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> None: ...

    async def get_job(self, job_id: UUID) -> IngestionJob | None: ...

    async def requeue_job(
        self,
        job_id: UUID,
        *,
        available_at: datetime,
        error: str | None = None,
        reason: str | None = None,
    ) -> None: ...

    async def purge_jobs(self, *, finished_before: datetime) -> int: ...

    async def find_stale_running_jobs(self, *, started_before: datetime) -> list[IngestionJob]: ...

    async def count_jobs_by_status(self) -> dict[str, int]: ...


def job_from_record(record: IngestionJobRecord) -> IngestionJob:
    return IngestionJob(
        id=record.id,
        job_type=JobType(record.job_type),
        target=dict(record.target or {}),
        priority=record.priority,
        status=JobStatus(record.status),
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        last_error=record.last_error,
        last_error_reason=record.last_error_reason,
        worker_id=record.worker_id,
        result=dict(record.result or {}),
        created_at=record.created_at,
        updated_at=record.updated_at,
        available_at=record.available_at,
        started_at=record.started_at,
        finished_at=record.finished_at,
    )


def merge_record_from_row(row: MergeRecordRow) -> MergeRecord:
    return MergeRecord(
        canonical_id=row.canonical_event_id,
        incoming_raw_event_ids=[UUID(str(item)) for item in row.incoming_raw_event_ids],
        decided_at=row.decided_at,
        similarity=dict(row.similarity or {}),
        decisions=dict(row.decisions or {}),
    )


def fingerprint_columns(fingerprint: Fingerprint) -> dict[str, Any]:
    return {
        "event_date": fingerprint.event_date,
        "title_bucket": fingerprint.title_bucket,
        "venue_bucket": fingerprint.venue_bucket,
        "lat_bucket": fingerprint.lat_bucket,
        "lng_bucket": fingerprint.lng_bucket,
    }


class SqlAlchemyEventStore:
    """PostgreSQL-backed `EventStore`."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        fingerprint_for: Any = None,
    ) -> None:
        if session_factory is None:
            from src.storage.database import async_session_maker

            session_factory = async_session_maker
        if fingerprint_for is None:
            from src.processing.deduplicator import Deduplicator

            fingerprint_for = Deduplicator().fingerprint
        self._session_factory = session_factory
        self._fingerprint_for = fingerprint_for

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Session that commits on success and maps connection failures."""
        try:
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (OperationalError, OSError, ConnectionError) as exc:
            msg = "Event store is unavailable"
            raise PersistenceUnavailableError(msg) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                msg = "Event store connection was lost"
                raise PersistenceUnavailableError(msg) from exc
            raise

    async def ping(self) -> None:
        async with self._session() as session:
            await session.execute(text("SELECT 1"))

    # -------------------------------------------------------------------------
    # Raw events
    # -------------------------------------------------------------------------

    async def save_raw_event(self, raw: RawEvent) -> tuple[UUID, bool]:
        async with self._session() as session:
            statement = (
                pg_insert(RawEventRecord)
                .values(
                    id=raw.id,
                    provider=raw.provider,
                    provider_event_id=raw.provider_event_id,
                    payload=raw.payload,
                    descriptor=raw.descriptor,
                    discovered_at=raw.discovered_at,
                )
                .on_conflict_do_nothing(index_elements=["provider", "provider_event_id"])
                .returning(RawEventRecord.id)
            )
            inserted = (await session.execute(statement)).scalar_one_or_none()
        return (raw.id, inserted is not None)

    async def get_raw_events(self, raw_event_ids: Sequence[UUID]) -> list[RawEvent]:
        if not raw_event_ids:
            return []
        async with self._session() as session:
            records = (
                await session.scalars(
                    select(RawEventRecord).where(RawEventRecord.id.in_(list(raw_event_ids)))
                )
            ).all()
        by_id = {
            record.id: raw_event_from_dict(
                {
                    "provider": record.provider,
                    "provider_event_id": record.provider_event_id,
                    "payload": record.payload,
                    "descriptor": record.descriptor,
                    "discovered_at": record.discovered_at,
                }
            )
            for record in records
        }
        return [by_id[raw_id] for raw_id in raw_event_ids if raw_id in by_id]

    async def find_unlinked_raw_events(self, raw_event_ids: Sequence[UUID]) -> list[UUID]:
        """Ids, in input order, that no canonical event has claimed yet."""
        if not raw_event_ids:
            return []
        async with self._session() as session:
            linked = set(
                (
                    await session.scalars(
                        select(CanonicalEventLink.raw_event_id).where(
                            CanonicalEventLink.raw_event_id.in_(list(raw_event_ids))
                        )
                    )
                ).all()
            )
        return [raw_id for raw_id in raw_event_ids if raw_id not in linked]

    # -------------------------------------------------------------------------
    # Canonical events
    # -------------------------------------------------------------------------

    async def find_by_provenance(self, raw_event_ids: Sequence[UUID]) -> NormalizedEvent | None:
        if not raw_event_ids:
            return None
        async with self._session() as session:
            record = (
                await session.scalars(
                    select(CanonicalEventRecord)
                    .join(
                        CanonicalEventLink,
                        CanonicalEventLink.canonical_event_id == CanonicalEventRecord.id,
                    )
                    .where(CanonicalEventLink.raw_event_id.in_(list(raw_event_ids)))
                    .order_by(CanonicalEventRecord.id)
                    .limit(1)
                )
            ).first()
        return _event_from_record(record) if record is not None else None

    async def find_fingerprint_candidates(
        self,
        fingerprint: Fingerprint,
        *,
        window_days: int,
    ) -> list[NormalizedEvent]:
        if not fingerprint.title_bucket:
            return []
        query = select(CanonicalEventRecord).where(CanonicalEventRecord.title_bucket != "")
        if fingerprint.event_date is None:
            query = query.where(
                CanonicalEventRecord.event_date.is_(None),
                CanonicalEventRecord.venue_bucket == fingerprint.venue_bucket,
            )
        else:
            window = timedelta(days=window_days)
            query = query.where(
                CanonicalEventRecord.event_date.between(
                    fingerprint.event_date - window,
                    fingerprint.event_date + window,
                )
            )
        query = query.order_by(CanonicalEventRecord.id).limit(FINGERPRINT_CANDIDATE_LIMIT)
        async with self._session() as session:
            records = (await session.scalars(query)).all()
        return [_event_from_record(record) for record in records]

    async def upsert_canonical_event(
        self,
        event: NormalizedEvent,
        *,
        expected_version: int | None,
    ) -> UUID:
        if event.id is None:
            msg = "Canonical events must carry an id before they are written"
            raise ValueError(msg)
        new_version = 1 if expected_version is None else expected_version + 1
        data = event_to_dict(event)
        data["version"] = new_version
        columns: dict[str, Any] = {
            "version": new_version,
            "title": event.title,
            "category": event.category.value,
            "start_at": event.start_at,
            "venue_id": event.venue.id if event.venue is not None else None,
            "quality_score": event.quality.score if event.quality else None,
            "quality_tier": event.quality.tier.value if event.quality else None,
            "data": data,
            **fingerprint_columns(self._fingerprint_for(event)),
        }
        raw_ids = [link.raw_event_id for link in event.provenance]

        try:
            async with self._session() as session:
                if expected_version is None:
                    session.add(CanonicalEventRecord(id=event.id, **columns))
                    await session.flush()
                else:
                    outcome = await session.execute(
                        update(CanonicalEventRecord)
                        .where(CanonicalEventRecord.id == event.id)
                        .where(CanonicalEventRecord.version == expected_version)
                        .values(**columns, updated_at=func.now())
                    )
                    if outcome.rowcount != 1:
                        msg = f"Canonical event {event.id} changed since version {expected_version}"
                        raise VersionConflictError(msg)
                if raw_ids:
                    links = pg_insert(CanonicalEventLink).values(
                        [
                            {"raw_event_id": raw_id, "canonical_event_id": event.id}
                            for raw_id in raw_ids
                        ]
                    )
                    # a new canonical event may not claim raw events linked elsewhere
                    if expected_version is not None:
                        links = links.on_conflict_do_nothing(index_elements=["raw_event_id"])
                    await session.execute(links)
        except IntegrityError as exc:
            msg = f"Canonical event {event.id} already exists"
            raise VersionConflictError(msg) from exc
        return event.id

    async def get_canonical_event(self, event_id: UUID) -> NormalizedEvent | None:
        async with self._session() as session:
            record = await session.get(CanonicalEventRecord, event_id)
        return _event_from_record(record) if record is not None else None

    async def list_canonical_events(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        category: str | None = None,
        tier: str | None = None,
    ) -> list[NormalizedEvent]:
        query = select(CanonicalEventRecord)
        if category is not None:
            query = query.where(CanonicalEventRecord.category == category)
        if tier is not None:
            query = query.where(CanonicalEventRecord.quality_tier == tier)
        query = (
            query.order_by(
                CanonicalEventRecord.start_at.asc().nulls_last(),
                CanonicalEventRecord.id,
            )
            .limit(limit)
            .offset(offset)
        )
        async with self._session() as session:
            records = (await session.scalars(query)).all()
        return [_event_from_record(record) for record in records]

    async def record_merge(self, record: MergeRecord) -> None:
        payload = merge_record_to_dict(record)
        async with self._session() as session:
            session.add(
                MergeRecordRow(
                    canonical_event_id=record.canonical_id,
                    incoming_raw_event_ids=payload["incoming_raw_event_ids"],
                    similarity=payload["similarity"],
                    decisions=payload["decisions"],
                    decided_at=record.decided_at,
                )
            )

    async def list_merge_records(self, canonical_id: UUID) -> list[MergeRecord]:
        async with self._session() as session:
            rows = (
                await session.scalars(
                    select(MergeRecordRow)
                    .where(MergeRecordRow.canonical_event_id == canonical_id)
                    .order_by(MergeRecordRow.decided_at, MergeRecordRow.id)
                )
            ).all()
        return [merge_record_from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Venues
    # -------------------------------------------------------------------------

    async def find_venue_candidates(
        self,
        *,
        bucket: str | None,
        provider_ids: dict[str, str],
    ) -> list[Venue]:
        clauses = [
            VenueRecord.provider_ids.contains({provider: native_id})
            for provider, native_id in sorted(provider_ids.items())
        ]
        if bucket:
            clauses.append(VenueRecord.name_bucket == bucket)
        if not clauses:
            return []
        async with self._session() as session:
            records = (
                await session.scalars(
                    select(VenueRecord).where(or_(*clauses)).order_by(VenueRecord.id).limit(50)
                )
            ).all()
        return [_venue_from_record(record) for record in records]

    async def upsert_venue(self, venue: Venue) -> UUID:
        if venue.id is None:
            msg = "Venues must carry an id before they are written"
            raise ValueError(msg)
        values = {
            "id": venue.id,
            "name": venue.name,
            "name_bucket": venue_bucket(venue.name),
            "provider_ids": dict(venue.provider_ids),
            "data": venue_to_dict(venue),
        }
        async with self._session() as session:
            statement = pg_insert(VenueRecord).values(**values)
            await session.execute(
                statement.on_conflict_do_update(
                    index_elements=["id"],
                    set_={
                        "name": statement.excluded.name,
                        "name_bucket": statement.excluded.name_bucket,
                        "provider_ids": VenueRecord.provider_ids.op("||")(
                            statement.excluded.provider_ids
                        ),
                        "data": statement.excluded.data,
                        "updated_at": func.now(),
                    },
                )
            )
        return venue.id

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def enqueue_job(self, job: IngestionJob) -> UUID:
        job_id = job.id or uuid4()
        async with self._session() as session:
            session.add(
                IngestionJobRecord(
                    id=job_id,
                    job_type=job.job_type.value,
                    target=job.target,
                    priority=job.priority,
                    status=job.status.value,
                    attempts=job.attempts,
                    max_attempts=job.max_attempts,
                    result=job.result,
                    created_at=job.created_at,
                    updated_at=job.updated_at,
                    available_at=job.available_at,
                )
            )
        return job_id

    async def claim_next_job(self, worker_id: str) -> IngestionJob | None:
        now = utc_now()
        async with self._session() as session:
            record = (
                await session.scalars(
                    select(IngestionJobRecord)
                    .where(
                        and_(
                            IngestionJobRecord.status == JobStatus.PENDING.value,
                            IngestionJobRecord.available_at <= now,
                        )
                    )
                    .order_by(
                        IngestionJobRecord.priority.desc(),
                        IngestionJobRecord.created_at.asc(),
                        IngestionJobRecord.id,
                    )
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
            ).first()
            if record is None:
                return None
            record.status = JobStatus.RUNNING.value
            record.worker_id = worker_id
            record.attempts += 1
            record.started_at = now
            record.updated_at = now
            record.finished_at = None
            await session.flush()
            return job_from_record(record)

    async def mark_job_status(
        self,
        job_id: UUID,
        status: JobStatus,
        *,
        error: str | None = None,
        reason: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> None:
        now = utc_now()
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status.is_terminal:
            values["finished_at"] = now
        if error is not None:
            values["last_error"] = error
            values["last_error_reason"] = reason
        if result is not None:
            values["result"] = result
        async with self._session() as session:
            await session.execute(
                update(IngestionJobRecord).where(IngestionJobRecord.id == job_id).values(**values)
            )

    async def get_job(self, job_id: UUID) -> IngestionJob | None:
        async with self._session() as session:
            record = await session.get(IngestionJobRecord, job_id)
        return job_from_record(record) if record is not None else None

    async def requeue_job(
        self,
        job_id: UUID,
        *,
        available_at: datetime,
        error: str | None = None,
        reason: str | None = None,
    ) -> None:
        async with self._session() as session:
            await session.execute(
                update(IngestionJobRecord)
                .where(IngestionJobRecord.id == job_id)
                .values(
                    status=JobStatus.PENDING.value,
                    worker_id=None,
                    available_at=available_at,
                    last_error=error,
                    last_error_reason=reason,
                    updated_at=utc_now(),
                )
            )

    async def purge_jobs(self, *, finished_before: datetime) -> int:
        async with self._session() as session:
            outcome = await session.execute(
                delete(IngestionJobRecord)
                .where(
                    IngestionJobRecord.status.in_(
                        [JobStatus.COMPLETED.value, JobStatus.FAILED.value]
                    )
                )
                .where(IngestionJobRecord.finished_at < finished_before)
            )
        return int(outcome.rowcount or 0)

    async def find_stale_running_jobs(self, *, started_before: datetime) -> list[IngestionJob]:
        async with self._session() as session:
            records = (
                await session.scalars(
                    select(IngestionJobRecord)
                    .where(IngestionJobRecord.status == JobStatus.RUNNING.value)
                    .where(IngestionJobRecord.started_at <= started_before)
                    .order_by(IngestionJobRecord.started_at.asc())
                )
            ).all()
        return [job_from_record(record) for record in records]

    async def count_jobs_by_status(self) -> dict[str, int]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(IngestionJobRecord.status, func.count()).group_by(
                        IngestionJobRecord.status
                    )
                )
            ).all()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({str(status): int(count) for status, count in rows})
        return counts


def _event_from_record(record: CanonicalEventRecord) -> NormalizedEvent:
    event = event_from_dict(record.data)
    event.id = record.id
    event.version = record.version
    return event


def _venue_from_record(record: VenueRecord) -> Venue:
    venue = venue_from_dict(record.data)
    assert venue is not None  # nosec B101
    venue.id = record.id
    venue.provider_ids = dict(sorted(dict(record.provider_ids or {}).items()))
    return venue
