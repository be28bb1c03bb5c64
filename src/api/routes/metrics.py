"""
Prometheus metrics endpoint.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from src.core.observability import (
    JOB_COMPLETIONS_TOTAL,
    PIPELINE_EVENTS_TOTAL,
    QUALITY_TIER_TOTAL,
    QUEUE_DEPTH,
    SOURCE_SUCCESS_RATE,
)

router = APIRouter()

_REGISTERED_METRICS = (
    JOB_COMPLETIONS_TOTAL,
    PIPELINE_EVENTS_TOTAL,
    QUALITY_TIER_TOTAL,
    QUEUE_DEPTH,
    SOURCE_SUCCESS_RATE,
)


@router.get("/metrics", include_in_schema=False)
async def get_metrics() -> Response:
    """Expose Prometheus metrics in text format."""
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
