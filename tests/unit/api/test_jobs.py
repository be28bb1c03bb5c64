from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api.main import register_exception_handlers
from src.api.routes import jobs as jobs_module
from src.core.errors import PersistenceUnavailableError, SourceRegistrationError

pytestmark = pytest.mark.unit


class _Scheduler:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[Any, ...]] = []
        self.jobs: dict[str, dict[str, Any]] = {}

    async def trigger_discovery(self, sources, locations, categories, *, keyword=None):
        if self.error is not None:
            raise self.error
        self.calls.append((sources, locations, categories, keyword))
        return [uuid4(), uuid4()]

    async def get_job_status(self, job_id):
        return self.jobs.get(str(job_id))

    async def get_pipeline_health(self) -> dict[str, Any]:
        return {
            "status": "degraded",
            "queue_depth": {"pending": 2, "running": 1, "completed": 5, "failed": 0},
            "held_results": 0,
            "open_circuits": ["beta"],
            "sources": {"beta": {"success_rate": 0.4, "circuit": {"state": "open"}}},
        }


def _client(scheduler: _Scheduler) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(jobs_module.router, prefix="/api/v1")
    app.state.runtime = SimpleNamespace(scheduler=scheduler, store=None)
    return TestClient(app, raise_server_exceptions=False)


def test_trigger_discovery_returns_job_ids() -> None:
    scheduler = _Scheduler()

    response = _client(scheduler).post(
        "/api/v1/jobs/discovery",
        json={"sources": ["alpha"], "categories": ["music"], "keyword": "jazz"},
    )

    assert response.status_code == 202
    assert len(response.json()["job_ids"]) == 2
    assert scheduler.calls == [(["alpha"], None, ["music"], "jazz")]


def test_trigger_discovery_rejects_unknown_category() -> None:
    response = _client(_Scheduler()).post(
        "/api/v1/jobs/discovery",
        json={"categories": ["not-a-category"]},
    )

    assert response.status_code == 422


def test_registration_errors_surface_reason_code() -> None:
    scheduler = _Scheduler(error=SourceRegistrationError("Source 'off' is disabled"))

    response = _client(scheduler).post("/api/v1/jobs/discovery", json={"sources": ["off"]})

    assert response.status_code == 400
    assert response.json() == {
        "error": "invalid_descriptor",
        "message": "Source 'off' is disabled",
    }


def test_store_outage_maps_to_503() -> None:
    scheduler = _Scheduler(error=PersistenceUnavailableError("Event store is unavailable"))

    response = _client(scheduler).post("/api/v1/jobs/discovery", json={})

    assert response.status_code == 503
    assert response.json()["error"] == "store_unavailable"


def test_get_job_status_found_and_missing() -> None:
    scheduler = _Scheduler()
    job_id = uuid4()
    scheduler.jobs[str(job_id)] = {
        "id": str(job_id),
        "job_type": "discovery",
        "status": "failed",
        "target": {"source": "alpha"},
        "priority": 10,
        "attempts": 4,
        "max_attempts": 4,
        "last_error": {"reason": "timeout", "message": "Request timed out"},
        "result": {},
        "created_at": "2026-05-01T12:00:00+00:00",
        "updated_at": "2026-05-01T12:05:00+00:00",
        "started_at": "2026-05-01T12:04:00+00:00",
        "finished_at": "2026-05-01T12:05:00+00:00",
    }
    client = _client(scheduler)

    found = client.get(f"/api/v1/jobs/{job_id}")
    missing = client.get(f"/api/v1/jobs/{uuid4()}")

    assert found.status_code == 200
    assert found.json()["last_error"] == {"reason": "timeout", "message": "Request timed out"}
    assert missing.status_code == 404


def test_pipeline_health_endpoint() -> None:
    response = _client(_Scheduler()).get("/api/v1/pipeline/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["open_circuits"] == ["beta"]
    assert payload["queue_depth"]["pending"] == 2
