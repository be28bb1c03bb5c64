from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from uuid import uuid4

import pytest

import src.cli as cli_module
from src.cli import _build_parser, _split_csv, main
from src.core.errors import SourceRegistrationError

pytestmark = pytest.mark.unit


class _Scheduler:
    def __init__(self, *, health_status: str = "healthy", error: Exception | None = None) -> None:
        self.health_status = health_status
        self.error = error
        self.discovery_calls: list[tuple[Any, ...]] = []
        self.purge_calls: list[int | None] = []

    async def trigger_discovery(self, sources, locations, categories, *, keyword=None):
        if self.error is not None:
            raise self.error
        self.discovery_calls.append((sources, locations, categories, keyword))
        return [uuid4()]

    async def get_job_status(self, job_id):
        return None

    async def get_pipeline_health(self) -> dict[str, Any]:
        return {"status": self.health_status, "queue_depth": {"pending": 0}}

    async def purge_expired_jobs(self, *, retention_hours=None) -> int:
        self.purge_calls.append(retention_hours)
        return 3


def _install_runtime(monkeypatch: pytest.MonkeyPatch, scheduler: _Scheduler) -> None:
    class _Runtime:
        def __init__(self, **_kwargs: Any) -> None:
            pass

        async def __aenter__(self) -> SimpleNamespace:
            return SimpleNamespace(scheduler=scheduler)

        async def __aexit__(self, *exc_info: Any) -> None:
            return None

    monkeypatch.setattr(cli_module, "build_runtime", _Runtime)
    monkeypatch.setattr(cli_module, "configure_logging", lambda **_: None)


def test_split_csv_drops_blank_entries() -> None:
    assert _split_csv("alpha, beta,,") == ["alpha", "beta"]
    assert _split_csv(None) == []


def test_build_parser_accepts_discover_command() -> None:
    args = _build_parser().parse_args(
        ["discover", "--sources", "alpha,beta", "--categories", "music", "--keyword", "jazz", "--run"]
    )

    assert args.command == "discover"
    assert args.sources == "alpha,beta"
    assert args.categories == "music"
    assert args.keyword == "jazz"
    assert args.run is True


def test_build_parser_accepts_work_command() -> None:
    args = _build_parser().parse_args(["work", "--size", "8", "--forever"])

    assert args.command == "work"
    assert args.size == 8
    assert args.forever is True


def test_discover_enqueues_jobs(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    scheduler = _Scheduler()
    _install_runtime(monkeypatch, scheduler)

    exit_code = main(["discover", "--sources", "alpha", "--locations", "austin, tx"])

    assert exit_code == 0
    assert scheduler.discovery_calls == [(["alpha"], ["austin, tx"], None, None)]
    assert "Enqueued 1 discovery job(s)" in capsys.readouterr().out


def test_discover_reports_typed_errors(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    _install_runtime(monkeypatch, _Scheduler(error=SourceRegistrationError("Unknown source 'x'")))

    exit_code = main(["discover", "--sources", "x"])

    assert exit_code == 1
    assert "error: invalid_descriptor: Unknown source 'x'" in capsys.readouterr().out


def test_health_fails_on_degraded_when_requested(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    _install_runtime(monkeypatch, _Scheduler(health_status="degraded"))

    assert main(["health"]) == 0
    assert main(["health", "--fail-on-degraded"]) == 2
    assert '"status": "degraded"' in capsys.readouterr().out


def test_job_status_for_unknown_job(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    _install_runtime(monkeypatch, _Scheduler())
    job_id = uuid4()

    assert main(["job-status", str(job_id)]) == 1
    assert f"Job {job_id} not found" in capsys.readouterr().out


def test_purge_jobs_passes_retention(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    scheduler = _Scheduler()
    _install_runtime(monkeypatch, scheduler)

    assert main(["purge-jobs", "--retention-hours", "12"]) == 0
    assert scheduler.purge_calls == [12]
    assert "Purged 3 job(s)" in capsys.readouterr().out


def test_missing_command_prints_help(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli_module, "configure_logging", lambda **_: None)

    assert main([]) == 1
