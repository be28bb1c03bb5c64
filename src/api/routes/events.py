"""
Events API endpoints.

Read access to canonical events with their warnings, provenance and quality
breakdown.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from src.api.deps import StoreDep
from src.core.domain import Category, QualityTier
from src.storage.serialization import event_to_dict, merge_record_to_dict

router = APIRouter()


@router.get("")
async def list_events(
    store: StoreDep,
    category: Category | None = None,
    tier: QualityTier | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> list[dict[str, Any]]:
    """List canonical events ordered by start time."""
    events = await store.list_canonical_events(
        limit=limit,
        offset=offset,
        category=category.value if category else None,
        tier=tier.value if tier else None,
    )
    return [event_to_dict(event) for event in events]


@router.get("/{event_id}")
async def get_event(event_id: UUID, store: StoreDep) -> dict[str, Any]:
    """Canonical event plus its merge audit trail."""
    event = await store.get_canonical_event(event_id)
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Event {event_id} not found",
        )
    merges = await store.list_merge_records(event_id)
    return {
        **event_to_dict(event),
        "merges": [merge_record_to_dict(record) for record in merges],
    }
