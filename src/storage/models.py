"""
Database models for the event ingestion pipeline.

This module defines all SQLAlchemy ORM models for the application.
Uses async SQLAlchemy 2.0 patterns. Canonical events keep their full domain
snapshot in a JSONB column; the scalar columns beside it exist for lookup
(fingerprint buckets), ordering and compare-and-swap.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# =============================================================================
# Base Configuration
# =============================================================================


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict: JSONB,
        UUID: PGUUID(as_uuid=True),
    }


# =============================================================================
# Raw Events
# =============================================================================


class RawEventRecord(Base):
    """
    Unmodified provider payload, stored once per (provider, provider id).

    Attributes:
        id: Stable id derived from provider and provider_event_id
        provider: Configured source name that discovered the payload
        provider_event_id: Provider-native event id
        payload: Provider JSON exactly as received
        descriptor: Search descriptor the discovery job ran with
        discovered_at: When the connector fetched the payload
    """

    __tablename__ = "raw_events"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True)
    provider: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(512), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    descriptor: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    discovered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_raw_events_provider_id"),
        Index("idx_raw_events_discovered", "discovered_at"),
    )


# =============================================================================
# Venues
# =============================================================================


class VenueRecord(Base):
    """Venue identity; provider ids accumulate as venue records merge."""

    __tablename__ = "venues"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    name_bucket: Mapped[str | None] = mapped_column(String(100))
    provider_ids: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_venues_name_bucket", "name_bucket"),
        Index("idx_venues_provider_ids", "provider_ids", postgresql_using="gin"),
    )


# =============================================================================
# Canonical Events
# =============================================================================


class CanonicalEventRecord(Base):
    """
    Deduplicated, merged event.

    Attributes:
        id: Canonical id (stable across re-ingestion)
        version: Incremented on every accepted write; writers compare-and-swap on it
        event_date: UTC date of the start instant, fingerprint date key
        title_bucket / venue_bucket / lat_bucket / lng_bucket: fingerprint keys
        data: Full event snapshot including field confidence, provenance,
            warnings and quality breakdown
    """

    __tablename__ = "canonical_events"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    start_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    event_date: Mapped[date | None] = mapped_column(Date)
    title_bucket: Mapped[str] = mapped_column(Text, nullable=False, default="")
    venue_bucket: Mapped[str | None] = mapped_column(String(100))
    lat_bucket: Mapped[float | None] = mapped_column(Float)
    lng_bucket: Mapped[float | None] = mapped_column(Float)
    venue_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("venues.id", ondelete="SET NULL"),
    )
    quality_score: Mapped[float | None] = mapped_column(Float)
    quality_tier: Mapped[str | None] = mapped_column(String(20))
    data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    links: Mapped[list[CanonicalEventLink]] = relationship(back_populates="canonical_event")

    __table_args__ = (
        CheckConstraint("version >= 1", name="check_canonical_version_positive"),
        CheckConstraint(
            "quality_score IS NULL OR (quality_score >= 0 AND quality_score <= 1)",
            name="check_quality_score_range",
        ),
        Index("idx_canonical_events_date", "event_date"),
        Index("idx_canonical_events_venue_bucket", "event_date", "venue_bucket"),
        Index("idx_canonical_events_start", "start_at"),
        Index("idx_canonical_events_tier", "quality_tier"),
    )


class CanonicalEventLink(Base):
    """
    Provenance link from a raw event to the canonical event it contributed to.

    A raw event belongs to exactly one canonical event.
    """

    __tablename__ = "canonical_event_links"

    raw_event_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("raw_events.id", ondelete="CASCADE"),
        primary_key=True,
    )
    canonical_event_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("canonical_events.id", ondelete="CASCADE"),
        nullable=False,
    )
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    canonical_event: Mapped[CanonicalEventRecord] = relationship(back_populates="links")

    __table_args__ = (Index("idx_canonical_event_links_event", "canonical_event_id"),)


class MergeRecordRow(Base):
    """Audit trail of merge decisions (kept origin and discarded value per field)."""

    __tablename__ = "merge_records"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    canonical_event_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("canonical_events.id", ondelete="CASCADE"),
        nullable=False,
    )
    incoming_raw_event_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    similarity: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    decisions: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_merge_records_event", "canonical_event_id", "decided_at"),)


# =============================================================================
# Jobs
# =============================================================================


class IngestionJobRecord(Base):
    """
    Unit of scheduled work.

    Workers claim pending jobs by priority (higher first), then creation time.
    """

    __tablename__ = "ingestion_jobs"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    job_type: Mapped[str] = mapped_column(String(20), nullable=False)
    target: Mapped[dict] = mapped_column(JSONB, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    last_error: Mapped[str | None] = mapped_column(Text)
    last_error_reason: Mapped[str | None] = mapped_column(String(50))
    worker_id: Mapped[str | None] = mapped_column(String(255))
    result: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="check_job_status",
        ),
        CheckConstraint("job_type IN ('discovery', 'ingestion')", name="check_job_type"),
        CheckConstraint("attempts >= 0", name="check_job_attempts"),
        Index("idx_ingestion_jobs_claim", "status", "priority", "created_at"),
        Index("idx_ingestion_jobs_finished", "status", "finished_at"),
    )
