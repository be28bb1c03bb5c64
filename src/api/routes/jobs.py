"""
Scheduling endpoints: trigger discovery, inspect jobs and pipeline health.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from src.api.deps import SchedulerDep
from src.core.domain import Category

router = APIRouter()


# =============================================================================
# Request / Response Models
# =============================================================================


class DiscoveryRequest(BaseModel):
    """Targets for a discovery run; empty lists fall back to configured defaults."""

    sources: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    categories: list[Category] = Field(default_factory=list)
    keyword: str | None = Field(default=None, max_length=200)


class DiscoveryResponse(BaseModel):
    job_ids: list[UUID]


class JobError(BaseModel):
    reason: str | None
    message: str


class JobStatusResponse(BaseModel):
    id: UUID
    job_type: str
    status: str
    target: dict[str, Any]
    priority: int
    attempts: int
    max_attempts: int
    last_error: JobError | None = None
    result: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str
    started_at: str | None = None
    finished_at: str | None = None


class PipelineHealthResponse(BaseModel):
    status: str
    queue_depth: dict[str, int]
    held_results: int
    open_circuits: list[str]
    sources: dict[str, dict[str, Any]]


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "/jobs/discovery",
    response_model=DiscoveryResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_discovery(payload: DiscoveryRequest, scheduler: SchedulerDep) -> DiscoveryResponse:
    """Enqueue one discovery job per source x location x category."""
    job_ids = await scheduler.trigger_discovery(
        payload.sources or None,
        payload.locations or None,
        [category.value for category in payload.categories] or None,
        keyword=payload.keyword,
    )
    return DiscoveryResponse(job_ids=job_ids)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: UUID, scheduler: SchedulerDep) -> JobStatusResponse:
    job = await scheduler.get_job_status(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    return JobStatusResponse.model_validate(job)


@router.get("/pipeline/health", response_model=PipelineHealthResponse)
async def get_pipeline_health(scheduler: SchedulerDep) -> PipelineHealthResponse:
    """Per-source success rate, queue depth and circuit breaker states."""
    return PipelineHealthResponse.model_validate(await scheduler.get_pipeline_health())
