"""
Application configuration using Pydantic Settings.

Loads configuration from environment variables and .env files.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _read_secret_file(path: str) -> str:
    try:
        content = Path(path).expanduser().read_text(encoding="utf-8").strip()
    except OSError as exc:
        msg = f"Could not read secret file '{path}'"
        raise ValueError(msg) from exc
    if not content:
        msg = f"Secret file '{path}' is empty"
        raise ValueError(msg)
    return content


class Settings(BaseSettings):
    """
    Application settings.

    All settings can be overridden via environment variables.
    For example, DATABASE_URL env var sets the database_url field.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Database
    # =========================================================================
    DATABASE_URL: str = Field(
        default="postgresql+asyncpg://postgres@localhost:5432/event_ingest",
        description="Async PostgreSQL connection string",
    )
    DATABASE_URL_FILE: str | None = Field(
        default=None,
        description="Path to file containing DATABASE_URL",
    )
    DATABASE_URL_SYNC: str = Field(
        default="",
        description="Sync PostgreSQL connection string (for Alembic); derived if empty",
    )
    DATABASE_POOL_SIZE: int = Field(default=10, ge=1, le=100)
    DATABASE_MAX_OVERFLOW: int = Field(default=20, ge=0, le=100)
    DATABASE_POOL_TIMEOUT_SECONDS: int = Field(
        default=30,
        ge=1,
        le=600,
        description="Seconds to wait for a DB connection from pool before timing out",
    )
    EVENT_STORE_BACKEND: Literal["postgres", "memory"] = Field(
        default="postgres",
        description="postgres for deployments; memory keeps everything in-process",
    )

    @model_validator(mode="after")
    def _load_secret_file_values(self) -> Settings:
        secret_mappings = {
            "DATABASE_URL": self.DATABASE_URL_FILE,
            "REDIS_URL": self.REDIS_URL_FILE,
            "OPENAI_API_KEY": self.OPENAI_API_KEY_FILE,
            "TICKETMASTER_API_KEY": self.TICKETMASTER_API_KEY_FILE,
            "EVENTBRITE_API_TOKEN": self.EVENTBRITE_API_TOKEN_FILE,
            "YELP_API_KEY": self.YELP_API_KEY_FILE,
        }
        for target_field, file_path in secret_mappings.items():
            if not file_path:
                continue
            setattr(self, target_field, _read_secret_file(file_path))
        return self

    @model_validator(mode="after")
    def _derive_database_url_sync(self) -> Settings:
        if self.DATABASE_URL.startswith("postgresql://"):
            # Runtime engines use asyncpg; normalize common sync-style URLs.
            self.DATABASE_URL = self.DATABASE_URL.replace(
                "postgresql://",
                "postgresql+asyncpg://",
                1,
            )
        if not self.DATABASE_URL_SYNC.strip():
            self.DATABASE_URL_SYNC = self.DATABASE_URL.replace("postgresql+asyncpg", "postgresql")
        return self

    @model_validator(mode="after")
    def _validate_quality_configuration(self) -> Settings:
        weight_total = (
            self.QUALITY_WEIGHT_COMPLETENESS
            + self.QUALITY_WEIGHT_ACCURACY
            + self.QUALITY_WEIGHT_RELEVANCE
            + self.QUALITY_WEIGHT_FRESHNESS
            + self.QUALITY_WEIGHT_ENGAGEMENT
            + self.QUALITY_WEIGHT_TRUSTWORTHINESS
        )
        if abs(weight_total - 1.0) > 1e-6:
            msg = f"Quality dimension weights must sum to 1.0 (got {weight_total:.4f})"
            raise ValueError(msg)
        if not (
            self.QUALITY_TIER_PREMIUM_MIN
            > self.QUALITY_TIER_STANDARD_MIN
            > self.QUALITY_TIER_BASIC_MIN
        ):
            msg = "Quality tier thresholds must be strictly descending (premium > standard > basic)"
            raise ValueError(msg)
        return self

    # =========================================================================
    # Redis
    # =========================================================================
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    REDIS_URL_FILE: str | None = Field(
        default=None,
        description="Path to file containing REDIS_URL",
    )

    # =========================================================================
    # API
    # =========================================================================
    API_HOST: str = Field(default="0.0.0.0")  # nosec B104
    API_PORT: int = Field(default=8000, ge=1, le=65535)
    API_RELOAD: bool = Field(default=True)
    CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return list(v) if v else []

    # =========================================================================
    # Connectors
    # =========================================================================
    CONNECTOR_CONFIG_PATH: str = Field(
        default="config/sources/connectors.yaml",
        description="YAML file describing registered source connectors",
    )
    TICKETMASTER_API_KEY: str = Field(default="")
    TICKETMASTER_API_KEY_FILE: str | None = Field(default=None)
    EVENTBRITE_API_TOKEN: str = Field(default="")
    EVENTBRITE_API_TOKEN_FILE: str | None = Field(default=None)
    YELP_API_KEY: str = Field(default="")
    YELP_API_KEY_FILE: str | None = Field(default=None)
    CONNECTOR_REQUEST_TIMEOUT_SECONDS: float = Field(default=20.0, gt=0, le=300)
    CONNECTOR_USER_AGENTS: list[str] = Field(
        default=[
            "EventIngest/1.0 (+https://example.org/bot)",
            "EventIngest/1.0 (compatible; discovery)",
        ],
        description="User-agent pool rotated across connector requests",
    )
    MAX_PAGES_PER_JOB: int = Field(default=5, ge=1, le=100)
    MAX_ITEMS_PER_JOB: int = Field(default=500, ge=1, le=10_000)

    @field_validator("CONNECTOR_USER_AGENTS", mode="before")
    @classmethod
    def parse_user_agents(cls, v: Any) -> list[str]:
        """Parse user agents from a '|'-separated string or list."""
        if isinstance(v, str):
            return [agent.strip() for agent in v.split("|") if agent.strip()]
        return [str(agent).strip() for agent in v or [] if str(agent).strip()]

    # =========================================================================
    # Rate Limiting / Circuit Breaker / Retry
    # =========================================================================
    RATE_LIMIT_DEFAULT_REQUESTS: int = Field(
        default=60,
        ge=1,
        description="Default request budget per source per window",
    )
    RATE_LIMIT_DEFAULT_WINDOW_SECONDS: float = Field(default=60.0, gt=0)
    CIRCUIT_BREAKER_MIN_CALLS: int = Field(
        default=10,
        ge=1,
        description="Calls observed before the breaker evaluates failure rate",
    )
    CIRCUIT_BREAKER_FAILURE_RATE: float = Field(default=0.5, gt=0, le=1)
    CIRCUIT_BREAKER_COOLDOWN_SECONDS: float = Field(default=60.0, gt=0)
    SOURCE_HEALTH_BACKEND: Literal["redis", "memory"] = Field(
        default="redis",
        description="Where breaker records and call outcomes live; memory is per-process",
    )
    SOURCE_HEALTH_REDIS_PREFIX: str = Field(default="event_ingest:source_health")
    SOURCE_OUTCOME_WINDOW: int = Field(
        default=100,
        ge=1,
        le=10_000,
        description="Recent connector calls kept per source for the success rate",
    )
    RETRY_MAX_ATTEMPTS: int = Field(default=4, ge=1, le=20)
    RETRY_INITIAL_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    RETRY_MULTIPLIER: float = Field(default=2.0, ge=1)
    RETRY_MAX_DELAY_SECONDS: float = Field(default=30.0, gt=0)
    RETRY_JITTER: float = Field(default=0.25, ge=0, lt=1)

    # =========================================================================
    # Scheduler / Workers
    # =========================================================================
    WORKER_POOL_SIZE: int = Field(default=4, ge=1, le=256)
    JOB_TIMEOUT_SECONDS: float = Field(default=300.0, gt=0)
    JOB_MAX_ATTEMPTS: int = Field(default=4, ge=1, le=20)
    JOB_RETENTION_HOURS: int = Field(
        default=72,
        ge=1,
        description="Completed/failed jobs older than this are purged",
    )
    JOB_STALE_RUNNING_MINUTES: int = Field(
        default=30,
        ge=1,
        description="Running jobs untouched this long are assumed orphaned",
    )
    INGESTION_BATCH_SIZE: int = Field(default=50, ge=1, le=1000)
    STORE_UNAVAILABLE_BACKOFF_SECONDS: float = Field(default=5.0, gt=0)
    DISCOVERY_INTERVAL_MINUTES: int = Field(default=120, ge=1)
    QUEUE_DRAIN_INTERVAL_MINUTES: int = Field(default=5, ge=1)
    JOB_PURGE_INTERVAL_HOURS: int = Field(default=6, ge=1)
    DISCOVERY_DEFAULT_LOCATIONS: list[str] = Field(
        default=["new york, ny", "los angeles, ca", "chicago, il", "san francisco, ca"],
    )
    CITY_TRAFFIC_LEVELS: dict[str, str] = Field(
        default={
            "new york, ny": "high",
            "los angeles, ca": "high",
            "chicago, il": "high",
            "san francisco, ca": "high",
            "boston, ma": "high",
            "seattle, wa": "medium",
            "denver, co": "medium",
            "austin, tx": "medium",
            "philadelphia, pa": "medium",
            "atlanta, ga": "medium",
        },
        description="Traffic level per target location; drives discovery priority",
    )

    @field_validator("DISCOVERY_DEFAULT_LOCATIONS", mode="before")
    @classmethod
    def parse_locations(cls, v: Any) -> list[str]:
        """Parse locations from a ';'-separated string or list."""
        if isinstance(v, str):
            return [loc.strip() for loc in v.split(";") if loc.strip()]
        return list(v) if v else []

    # =========================================================================
    # Celery
    # =========================================================================
    CELERY_BROKER_URL: str = Field(default="redis://localhost:6379/1")
    CELERY_RESULT_BACKEND: str = Field(default="redis://localhost:6379/2")
    WORKER_HEARTBEAT_REDIS_KEY: str = Field(
        default="event_ingest:worker:last_activity",
        description="Redis key storing the latest worker activity heartbeat payload",
    )
    WORKER_HEARTBEAT_TTL_SECONDS: int = Field(default=3600, ge=60)

    # =========================================================================
    # Pipeline
    # =========================================================================
    PIPELINE_CONCURRENCY: int = Field(default=8, ge=1, le=256)
    PIPELINE_PERSIST_RETRIES: int = Field(
        default=3,
        ge=0,
        description="Retries for held results while the store is unavailable",
    )
    DEFAULT_TIMEZONE: str = Field(default="UTC")
    DEFAULT_CURRENCY: str = Field(default="USD", min_length=3, max_length=3)
    CLEANER_MAX_TITLE_LENGTH: int = Field(default=200, ge=10)
    CLEANER_MAX_DESCRIPTION_LENGTH: int = Field(default=5000, ge=50)
    CLEANER_STALE_START_DAYS: int = Field(default=183, ge=1)

    # =========================================================================
    # Geocoding
    # =========================================================================
    GEOCODER_PRIMARY: str = Field(default="nominatim")
    GEOCODER_SECONDARY: str | None = Field(default="arcgis")
    GEOCODER_USER_AGENT: str = Field(default="event-ingest-geocoder")
    GEOCODER_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    GEOCODER_REQUESTS_PER_SECOND: float = Field(default=1.0, gt=0)
    GEOCODER_CACHE_TTL_SECONDS: int = Field(default=86_400, ge=60)
    GEOCODER_CACHE_MAX_ENTRIES: int = Field(default=10_000, ge=1)
    GEOCODER_BATCH_CONCURRENCY: int = Field(default=3, ge=1, le=32)
    GEOCODER_BATCH_DELAY_SECONDS: float = Field(default=0.2, ge=0)

    # =========================================================================
    # Classification
    # =========================================================================
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    OPENAI_API_KEY_FILE: str | None = Field(default=None)
    CLASSIFIER_ENABLED: bool = Field(
        default=False,
        description="Call the external classification provider before rule fallback",
    )
    CLASSIFIER_PRIMARY_MODEL: str = Field(default="gpt-4.1-nano")
    CLASSIFIER_SECONDARY_MODEL: str | None = Field(default=None)
    CLASSIFIER_CONFIDENCE_THRESHOLD: float = Field(default=0.7, ge=0, le=1)
    CLASSIFIER_MAX_CATEGORIES: int = Field(default=3, ge=1, le=10)
    CLASSIFIER_MAX_TAGS: int = Field(default=8, ge=0, le=50)
    CLASSIFIER_CACHE_TTL_SECONDS: int = Field(default=86_400, ge=60)
    CLASSIFIER_CACHE_MAX_ENTRIES: int = Field(default=5_000, ge=1)
    CLASSIFIER_REDIS_CACHE_PREFIX: str | None = Field(
        default=None,
        description="Enable cross-worker Redis result cache under this key prefix",
    )

    # =========================================================================
    # Deduplication
    # =========================================================================
    DEDUP_DATE_WINDOW_HOURS: float = Field(default=24.0, gt=0)
    DEDUP_RADIUS_METERS: float = Field(default=150.0, gt=0)
    DEDUP_TITLE_SIMILARITY: float = Field(default=0.85, ge=0, le=1)
    DEDUP_VENUE_SIMILARITY: float = Field(default=0.80, ge=0, le=1)
    DEDUP_STRICT_TITLE_SIMILARITY: float = Field(
        default=0.95,
        ge=0,
        le=1,
        description="Title cutoff when neither coordinates nor venues can corroborate",
    )
    DEDUP_COORDINATE_PRECISION: int = Field(default=3, ge=1, le=6)
    DEDUP_MAX_MERGE_RETRIES: int = Field(default=3, ge=1, le=20)

    # =========================================================================
    # Quality Scoring
    # =========================================================================
    QUALITY_WEIGHT_COMPLETENESS: float = Field(default=0.25, ge=0, le=1)
    QUALITY_WEIGHT_ACCURACY: float = Field(default=0.20, ge=0, le=1)
    QUALITY_WEIGHT_RELEVANCE: float = Field(default=0.20, ge=0, le=1)
    QUALITY_WEIGHT_FRESHNESS: float = Field(default=0.15, ge=0, le=1)
    QUALITY_WEIGHT_ENGAGEMENT: float = Field(default=0.10, ge=0, le=1)
    QUALITY_WEIGHT_TRUSTWORTHINESS: float = Field(default=0.10, ge=0, le=1)
    QUALITY_TIER_PREMIUM_MIN: float = Field(default=0.8, ge=0, le=1)
    QUALITY_TIER_STANDARD_MIN: float = Field(default=0.6, ge=0, le=1)
    QUALITY_TIER_BASIC_MIN: float = Field(default=0.4, ge=0, le=1)
    QUALITY_DEFAULT_CATEGORY_COMPETITION: float = Field(default=0.5, ge=0, le=1)
    QUALITY_DEFAULT_LOCATION_POPULARITY: float = Field(default=0.5, ge=0, le=1)
    QUALITY_MAX_RECOMMENDATIONS: int = Field(default=3, ge=1, le=6)

    # =========================================================================
    # Application
    # =========================================================================
    ENVIRONMENT: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )
    SQL_ECHO: bool = Field(
        default=False,
        description="Log SQL statements from SQLAlchemy engine",
    )
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json", description="json or console")

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def effective_log_level(self) -> str:
        """Log level with a DEBUG floor in development when SQL echo is on."""
        if self.is_development and self.SQL_ECHO:
            return "DEBUG"
        return self.LOG_LEVEL


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Convenience instance
settings = get_settings()
