"""Initial database schema.

Revision ID: 0001_initial_schema
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, *, nullable: bool = False, default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()") if default else None,
        nullable=nullable,
    )


def upgrade() -> None:
    # ---------------------------------------------------------------------
    # Raw events and venues
    # ---------------------------------------------------------------------
    op.create_table(
        "raw_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("provider", sa.String(length=100), nullable=False),
        sa.Column("provider_event_id", sa.String(length=512), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("descriptor", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("discovered_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint("provider", "provider_event_id", name="uq_raw_events_provider_id"),
    )
    op.create_index("idx_raw_events_discovered", "raw_events", ["discovered_at"])

    op.create_table(
        "venues",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("name_bucket", sa.String(length=100), nullable=True),
        sa.Column("provider_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _timestamp("updated_at"),
    )
    op.create_index("idx_venues_name_bucket", "venues", ["name_bucket"])
    op.create_index(
        "idx_venues_provider_ids",
        "venues",
        ["provider_ids"],
        postgresql_using="gin",
    )

    # ---------------------------------------------------------------------
    # Canonical events
    # ---------------------------------------------------------------------
    op.create_table(
        "canonical_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("event_date", sa.Date(), nullable=True),
        sa.Column("title_bucket", sa.Text(), nullable=False),
        sa.Column("venue_bucket", sa.String(length=100), nullable=True),
        sa.Column("lat_bucket", sa.Float(), nullable=True),
        sa.Column("lng_bucket", sa.Float(), nullable=True),
        sa.Column(
            "venue_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("venues.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("quality_score", sa.Float(), nullable=True),
        sa.Column("quality_tier", sa.String(length=20), nullable=True),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("version >= 1", name="check_canonical_version_positive"),
        sa.CheckConstraint(
            "quality_score IS NULL OR (quality_score >= 0 AND quality_score <= 1)",
            name="check_quality_score_range",
        ),
    )
    op.create_index("idx_canonical_events_date", "canonical_events", ["event_date"])
    op.create_index(
        "idx_canonical_events_venue_bucket",
        "canonical_events",
        ["event_date", "venue_bucket"],
    )
    op.create_index("idx_canonical_events_start", "canonical_events", ["start_at"])
    op.create_index("idx_canonical_events_tier", "canonical_events", ["quality_tier"])

    op.create_table(
        "canonical_event_links",
        sa.Column(
            "raw_event_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("raw_events.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column(
            "canonical_event_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("canonical_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _timestamp("added_at"),
    )
    op.create_index(
        "idx_canonical_event_links_event",
        "canonical_event_links",
        ["canonical_event_id"],
    )

    op.create_table(
        "merge_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "canonical_event_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("canonical_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "incoming_raw_event_ids",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
        ),
        sa.Column("similarity", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("decisions", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_merge_records_event",
        "merge_records",
        ["canonical_event_id", "decided_at"],
    )

    # ---------------------------------------------------------------------
    # Jobs
    # ---------------------------------------------------------------------
    op.create_table(
        "ingestion_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("job_type", sa.String(length=20), nullable=False),
        sa.Column("target", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_reason", sa.String(length=50), nullable=True),
        sa.Column("worker_id", sa.String(length=255), nullable=True),
        sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("available_at"),
        _timestamp("started_at", nullable=True, default=False),
        _timestamp("finished_at", nullable=True, default=False),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="check_job_status",
        ),
        sa.CheckConstraint("job_type IN ('discovery', 'ingestion')", name="check_job_type"),
        sa.CheckConstraint("attempts >= 0", name="check_job_attempts"),
    )
    op.create_index(
        "idx_ingestion_jobs_claim",
        "ingestion_jobs",
        ["status", "priority", "created_at"],
    )
    op.create_index("idx_ingestion_jobs_finished", "ingestion_jobs", ["status", "finished_at"])


def downgrade() -> None:
    op.drop_table("ingestion_jobs")
    op.drop_table("merge_records")
    op.drop_table("canonical_event_links")
    op.drop_table("canonical_events")
    op.drop_table("venues")
    op.drop_table("raw_events")
