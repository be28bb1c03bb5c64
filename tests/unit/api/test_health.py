from __future__ import annotations

import pytest

import src.api.routes.health as health_module
from src.storage.memory_store import InMemoryEventStore

pytestmark = pytest.mark.unit


async def _healthy_redis() -> dict[str, object]:
    return {"status": "healthy", "latency_ms": 1.0}


async def _unhealthy_redis() -> dict[str, object]:
    return {"status": "unhealthy", "message": "Redis did not answer"}


@pytest.mark.asyncio
async def test_health_check_reports_healthy_components(memory_store, monkeypatch) -> None:
    monkeypatch.setattr(health_module, "check_redis", _healthy_redis)

    result = await health_module.health_check(store=memory_store)

    assert result.status == "healthy"
    assert result.checks["event_store"]["status"] == "healthy"
    assert result.version == health_module.API_VERSION


@pytest.mark.asyncio
async def test_health_check_degrades_without_redis(monkeypatch) -> None:
    monkeypatch.setattr(health_module, "check_redis", _unhealthy_redis)

    result = await health_module.health_check(store=InMemoryEventStore())

    assert result.status == "degraded"
    assert result.checks["redis"]["message"] == "Redis did not answer"


@pytest.mark.asyncio
async def test_health_check_is_unhealthy_without_store(monkeypatch) -> None:
    monkeypatch.setattr(health_module, "check_redis", _unhealthy_redis)
    store = InMemoryEventStore()
    store.available = False

    result = await health_module.health_check(store=store)

    assert result.status == "unhealthy"
    assert result.checks["event_store"] == {
        "status": "unhealthy",
        "reason": "store_unavailable",
        "message": "Event store is unavailable",
    }


@pytest.mark.asyncio
async def test_readiness_follows_event_store() -> None:
    store = InMemoryEventStore()

    assert await health_module.readiness_check(store=store) == {"status": "ready"}

    store.available = False

    assert await health_module.readiness_check(store=store) == {
        "status": "not_ready",
        "reason": "store_unavailable",
    }


@pytest.mark.asyncio
async def test_liveness_does_not_touch_dependencies() -> None:
    assert await health_module.liveness_check() == {"status": "alive"}
