"""
Connector registry loaded from YAML, validated at registration time.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import fields
from pathlib import Path
from typing import Any

import httpx
import structlog
import yaml

from src.core.config import settings
from src.core.errors import SourceRegistrationError
from src.core.source_reputation import SourceKind, effective_source_reputation
from src.ingestion.eventbrite_connector import EventbriteConnector
from src.ingestion.rate_limiter import TokenBucketRateLimiter
from src.ingestion.source_connector import (
    ConnectorConfig,
    ExtractedFields,
    GenericConnector,
    SourceConnector,
)
from src.ingestion.ticketmaster_connector import TicketmasterConnector
from src.ingestion.yelp_connector import YelpConnector

logger = structlog.get_logger(__name__)

CONNECTOR_TYPES: dict[str, type[SourceConnector]] = {
    TicketmasterConnector.provider: TicketmasterConnector,
    EventbriteConnector.provider: EventbriteConnector,
    YelpConnector.provider: YelpConnector,
    GenericConnector.provider: GenericConnector,
}

FieldExtractor = Callable[[dict[str, Any]], ExtractedFields]


class ConnectorRegistry:
    """Holds configured connectors keyed by source name."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        config_path: str | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
    ) -> None:
        self.http_client = http_client
        self.config_path = Path(config_path or settings.CONNECTOR_CONFIG_PATH)
        self.rate_limiter = rate_limiter or TokenBucketRateLimiter(
            settings.RATE_LIMIT_DEFAULT_REQUESTS,
            settings.RATE_LIMIT_DEFAULT_WINDOW_SECONDS,
        )
        self.max_pages = settings.MAX_PAGES_PER_JOB
        self.max_items = settings.MAX_ITEMS_PER_JOB
        self._connectors: dict[str, SourceConnector] = {}
        self._config_mtime: float | None = None

    @property
    def names(self) -> list[str]:
        return sorted(self._connectors)

    def enabled(self) -> list[SourceConnector]:
        return [
            self._connectors[name] for name in self.names if self._connectors[name].config.enabled
        ]

    def get(self, name: str) -> SourceConnector:
        connector = self._connectors.get(name)
        if connector is None:
            msg = f"Unknown source '{name}'"
            raise SourceRegistrationError(msg)
        return connector

    def load_config(self, force: bool = False) -> None:
        """Load or hot-reload connector registrations from YAML."""
        if not self.config_path.exists():
            msg = f"Connector config file not found: {self.config_path}"
            raise FileNotFoundError(msg)

        mtime = self.config_path.stat().st_mtime
        if not force and self._config_mtime is not None and mtime == self._config_mtime:
            return

        raw_config = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(raw_config, dict):
            msg = "Invalid connector config format: expected mapping at top-level"
            raise SourceRegistrationError(msg)

        settings_config = raw_config.get("settings", {}) or {}
        connectors_config = raw_config.get("connectors", []) or []
        if not isinstance(settings_config, dict):
            msg = "Invalid connector settings format"
            raise SourceRegistrationError(msg)
        if not isinstance(connectors_config, list):
            msg = "Invalid connector list format"
            raise SourceRegistrationError(msg)

        self.max_pages = int(settings_config.get("max_pages", settings.MAX_PAGES_PER_JOB))
        self.max_items = int(settings_config.get("max_items", settings.MAX_ITEMS_PER_JOB))

        parsed = [self._parse_connector(entry) for entry in connectors_config]
        previous = self._connectors
        self._connectors = {}
        try:
            for config in parsed:
                self.register(config)
        except SourceRegistrationError:
            self._connectors = previous
            raise
        self._config_mtime = mtime

        logger.info(
            "Connector configuration loaded",
            config_path=str(self.config_path),
            connectors=len(self._connectors),
            enabled=len(self.enabled()),
        )

    def register(
        self,
        config: ConnectorConfig,
        *,
        connector: SourceConnector | None = None,
    ) -> SourceConnector:
        """Validate and register one connector; invalid descriptors are rejected here."""
        if config.name in self._connectors:
            msg = f"Duplicate connector name '{config.name}'"
            raise SourceRegistrationError(msg)
        connector_type = CONNECTOR_TYPES.get(config.provider)
        if connector_type is None and connector is None:
            msg = f"Unknown provider '{config.provider}' for connector '{config.name}'"
            raise SourceRegistrationError(msg)
        if not 0.0 <= config.reputation <= 1.0:
            msg = f"Connector '{config.name}' reputation must be within [0, 1]"
            raise SourceRegistrationError(msg)
        if config.source_kind is not None and config.source_kind not in set(SourceKind):
            msg = f"Connector '{config.name}' has unknown source_kind '{config.source_kind}'"
            raise SourceRegistrationError(msg)

        if connector is None:
            assert connector_type is not None  # nosec B101
            connector = connector_type(config=config, http_client=self.http_client)
        self._validate_defaults(connector)

        if config.rate_limit_requests and config.rate_limit_window_seconds:
            self.rate_limiter.configure(
                config.name,
                requests=config.rate_limit_requests,
                window_seconds=config.rate_limit_window_seconds,
            )
        self._connectors[config.name] = connector
        return connector

    def extractor_for(self, source_name: str) -> FieldExtractor:
        """Field extractor for payloads stored under `source_name`."""
        connector = self._connectors.get(source_name)
        if connector is not None:
            return type(connector).extract_fields
        connector_type = CONNECTOR_TYPES.get(source_name, GenericConnector)
        return connector_type.extract_fields

    def reputation_for(self, source_name: str) -> float:
        connector = self._connectors.get(source_name)
        if connector is None:
            return effective_source_reputation(base_reputation=None, source_kind=None)
        return effective_source_reputation(
            base_reputation=connector.config.reputation,
            source_kind=connector.config.source_kind,
        )

    def provider_for(self, source_name: str) -> str:
        """Provider kind behind a configured source name (drives category mapping)."""
        connector = self._connectors.get(source_name)
        return connector.config.provider if connector is not None else source_name

    def page_caps(self, source_name: str) -> tuple[int, int]:
        config = self.get(source_name).config
        return (config.max_pages or self.max_pages, config.max_items or self.max_items)

    @staticmethod
    def _validate_defaults(connector: SourceConnector) -> None:
        descriptor_fields = {item.name for item in fields(connector.descriptor_type)}
        unknown = sorted(set(connector.config.defaults) - descriptor_fields)
        if unknown:
            msg = (
                f"Connector '{connector.name}' has unknown descriptor defaults: "
                f"{', '.join(unknown)}"
            )
            raise SourceRegistrationError(msg)
        values = dict(connector.config.defaults)
        if "organization_ids" in values:
            values["organization_ids"] = tuple(values["organization_ids"] or ())
        try:
            descriptor = connector.descriptor_type(**values)
        except (TypeError, ValueError) as exc:
            msg = f"Connector '{connector.name}' has invalid descriptor defaults: {exc}"
            raise SourceRegistrationError(msg) from exc
        if connector.config.enabled:
            descriptor.validate(require_location=False)

    @staticmethod
    def _parse_connector(entry: Any) -> ConnectorConfig:
        if not isinstance(entry, dict):
            msg = "Connector entry must be a mapping"
            raise SourceRegistrationError(msg)
        name = str(entry.get("name") or "").strip()
        provider = str(entry.get("provider") or name).strip().lower()
        if not name:
            msg = "Connector entry is missing a name"
            raise SourceRegistrationError(msg)

        rate_limit = entry.get("rate_limit") or {}
        defaults = entry.get("defaults") or {}
        if not isinstance(rate_limit, dict) or not isinstance(defaults, dict):
            msg = f"Connector '{name}' rate_limit/defaults must be mappings"
            raise SourceRegistrationError(msg)

        try:
            return ConnectorConfig(
                name=name,
                provider=provider,
                enabled=bool(entry.get("enabled", True)),
                base_url=entry.get("base_url"),
                reputation=float(entry.get("reputation", 0.5)),
                source_kind=entry.get("source_kind"),
                rate_limit_requests=_optional_int(rate_limit.get("requests")),
                rate_limit_window_seconds=_optional_float(rate_limit.get("window_seconds")),
                max_pages=_optional_int(entry.get("max_pages")),
                max_items=_optional_int(entry.get("max_items")),
                defaults=defaults,
            )
        except (TypeError, ValueError) as exc:
            msg = f"Connector '{name}' has invalid numeric settings"
            raise SourceRegistrationError(msg) from exc


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)
