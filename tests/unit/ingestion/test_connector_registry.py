from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from src.core.errors import SourceRegistrationError
from src.ingestion.connector_registry import ConnectorRegistry
from src.ingestion.rate_limiter import TokenBucketRateLimiter
from src.ingestion.source_connector import ConnectorConfig, GenericConnector
from src.ingestion.ticketmaster_connector import TicketmasterConnector

pytestmark = pytest.mark.unit

VALID_CONFIG = """
settings:
  max_pages: 4
  max_items: 200
connectors:
  - name: ticketmaster
    provider: ticketmaster
    reputation: 0.9
    source_kind: ticketing
    rate_limit:
      requests: 5
      window_seconds: 1
    defaults:
      country_code: US
  - name: city-calendar
    provider: generic
    base_url: https://city.test/events
    source_kind: government
    max_pages: 2
  - name: eventbrite
    provider: eventbrite
    enabled: false
    defaults:
      organization_ids: []
"""


def _registry(tmp_path: Path, content: str) -> ConnectorRegistry:
    path = tmp_path / "connectors.yaml"
    path.write_text(content, encoding="utf-8")
    return ConnectorRegistry(http_client=httpx.AsyncClient(), config_path=str(path))


def test_load_config_registers_connectors(tmp_path: Path) -> None:
    registry = _registry(tmp_path, VALID_CONFIG)

    registry.load_config()

    assert registry.names == ["city-calendar", "eventbrite", "ticketmaster"]
    assert [item.name for item in registry.enabled()] == ["city-calendar", "ticketmaster"]
    assert isinstance(registry.get("ticketmaster"), TicketmasterConnector)
    assert registry.page_caps("city-calendar") == (2, 200)
    assert registry.page_caps("ticketmaster") == (4, 200)
    assert registry.reputation_for("ticketmaster") == pytest.approx(0.9 * 0.95)
    assert registry.reputation_for("unknown-source") == pytest.approx(0.5)
    assert registry.provider_for("city-calendar") == "generic"


def test_extractor_for_falls_back_to_generic_mapping(tmp_path: Path) -> None:
    registry = _registry(tmp_path, VALID_CONFIG)
    registry.load_config()

    assert registry.extractor_for("ticketmaster") == TicketmasterConnector.extract_fields
    assert registry.extractor_for("retired-feed") == GenericConnector.extract_fields


def test_unknown_source_is_rejected(tmp_path: Path) -> None:
    registry = _registry(tmp_path, VALID_CONFIG)
    registry.load_config()

    with pytest.raises(SourceRegistrationError, match="Unknown source"):
        registry.get("missing")


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("connectors:\n  - name: a\n    provider: nope\n", "Unknown provider"),
        ("connectors:\n  - name: a\n    provider: generic\n    reputation: 1.5\n", "reputation"),
        (
            "connectors:\n  - name: a\n    provider: generic\n    source_kind: blog\n",
            "unknown source_kind",
        ),
        (
            "connectors:\n  - name: a\n    provider: generic\n  - name: a\n    provider: generic\n",
            "Duplicate connector name",
        ),
        (
            "connectors:\n  - name: tm\n    provider: ticketmaster\n    defaults:\n      radius_meters: 5\n",
            "unknown descriptor defaults",
        ),
        (
            "connectors:\n  - name: eb\n    provider: eventbrite\n    defaults:\n      organization_ids: []\n",
            "organization id",
        ),
        ("- just a list\n", "expected mapping"),
    ],
)
def test_invalid_registrations_are_rejected(tmp_path: Path, content: str, message: str) -> None:
    registry = _registry(tmp_path, content)

    with pytest.raises(SourceRegistrationError, match=message):
        registry.load_config()


def test_failed_reload_keeps_previous_registrations(tmp_path: Path) -> None:
    registry = _registry(tmp_path, VALID_CONFIG)
    registry.load_config()

    (tmp_path / "connectors.yaml").write_text(
        "connectors:\n  - name: a\n    provider: nope\n",
        encoding="utf-8",
    )
    with pytest.raises(SourceRegistrationError):
        registry.load_config(force=True)

    assert "ticketmaster" in registry.names


def test_hot_reload_keeps_token_budget_of_unchanged_sources(tmp_path: Path) -> None:
    path = tmp_path / "connectors.yaml"
    path.write_text(VALID_CONFIG, encoding="utf-8")
    registry = ConnectorRegistry(
        http_client=httpx.AsyncClient(),
        config_path=str(path),
        rate_limiter=TokenBucketRateLimiter(clock=lambda: 0.0),
    )
    registry.load_config()
    for _ in range(5):
        registry.rate_limiter.try_acquire("ticketmaster")

    (tmp_path / "connectors.yaml").write_text(
        VALID_CONFIG.replace("reputation: 0.9", "reputation: 0.8"),
        encoding="utf-8",
    )
    registry.load_config(force=True)

    assert registry.reputation_for("ticketmaster") == pytest.approx(0.8 * 0.95)
    assert registry.rate_limiter.available("ticketmaster") == pytest.approx(0.0)

    (tmp_path / "connectors.yaml").write_text(
        VALID_CONFIG.replace("requests: 5", "requests: 10"),
        encoding="utf-8",
    )
    registry.load_config(force=True)

    assert registry.rate_limiter.available("ticketmaster") == pytest.approx(10.0)



def test_missing_config_file_raises(tmp_path: Path) -> None:
    registry = ConnectorRegistry(
        http_client=httpx.AsyncClient(),
        config_path=str(tmp_path / "absent.yaml"),
    )

    with pytest.raises(FileNotFoundError):
        registry.load_config()


def test_register_accepts_prebuilt_connector(tmp_path: Path) -> None:
    registry = _registry(tmp_path, "connectors: []\n")
    registry.load_config()
    config = ConnectorConfig(name="custom", provider="custom-feed", base_url="https://c.test")
    connector = GenericConnector(config=config, http_client=registry.http_client)

    registry.register(config, connector=connector)

    assert registry.get("custom") is connector
