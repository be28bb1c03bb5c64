"""
Health check endpoints.

Provides endpoints for monitoring application health,
including event store and Redis connectivity checks.
"""

from __future__ import annotations

import time
from typing import Any

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter
from pydantic import BaseModel
from redis.exceptions import RedisError

from src.api.deps import StoreDep
from src.core.config import settings
from src.core.domain import utc_now
from src.core.errors import PersistenceUnavailableError
from src.storage.repository import EventStore

logger = structlog.get_logger(__name__)

router = APIRouter()

API_VERSION = "1.0.0"


# =============================================================================
# Response Models
# =============================================================================


class HealthStatus(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str
    checks: dict[str, Any]


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/health", response_model=HealthStatus)
async def health_check(store: StoreDep) -> HealthStatus:
    """
    Check application health.

    The event store is critical; Redis only backs caches and Celery, so its
    absence degrades rather than fails the service.
    """
    checks: dict[str, Any] = {}
    overall_status = "healthy"

    store_check = await check_store(store)
    checks["event_store"] = store_check
    if store_check["status"] != "healthy":
        overall_status = "unhealthy"

    redis_check = await check_redis()
    checks["redis"] = redis_check
    if redis_check["status"] != "healthy":
        overall_status = "degraded" if overall_status == "healthy" else overall_status

    return HealthStatus(
        status=overall_status,
        timestamp=utc_now().isoformat(),
        version=API_VERSION,
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """
    Kubernetes liveness check.

    Does not check dependencies.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(store: StoreDep) -> dict[str, str]:
    """Kubernetes readiness check: ready once the event store answers."""
    check = await check_store(store)
    if check["status"] == "healthy":
        return {"status": "ready"}
    return {"status": "not_ready", "reason": check.get("reason", "store_unavailable")}


# =============================================================================
# Health Check Functions
# =============================================================================


async def check_store(store: EventStore) -> dict[str, Any]:
    """Check event store connectivity and latency."""
    start = time.perf_counter()
    try:
        await store.ping()
    except PersistenceUnavailableError as exc:
        logger.error("Event store health check failed", reason=exc.reason.value)
        return {"status": "unhealthy", "reason": exc.reason.value, "message": exc.message}
    return {
        "status": "healthy",
        "latency_ms": round((time.perf_counter() - start) * 1000, 2),
    }


async def check_redis() -> dict[str, Any]:
    """Check Redis connectivity."""
    start = time.perf_counter()
    client = aioredis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        logger.warning("Redis health check failed", error=type(exc).__name__)
        return {"status": "unhealthy", "message": "Redis did not answer"}
    finally:
        await client.aclose()
    return {
        "status": "healthy",
        "latency_ms": round((time.perf_counter() - start) * 1000, 2),
    }
