"""
Croutons Graph Service - Configuration

Settings are read from os.environ via pydantic-settings. No .env file is
auto-loaded here; CLI entry points call load_dotenv() explicitly before the
first get_settings() call.

REQUIRED in production (ENVIRONMENT=prod):
  DATABASE_URL         - Postgres connection string
  PUBLISH_HMAC_KEY     - Shared secret for X-Signature verification

Everything else has a working default.
"""

from __future__ import annotations

import logging
import os
import uuid
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from croutons.core.logging import configure_structured_logging, get_logger

logger = get_logger(__name__)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # =========================================================================
    # ENVIRONMENT
    # =========================================================================

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment",
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    LOG_JSON: Optional[bool] = Field(
        default=None,
        description="Force JSON logs on/off (default: JSON in prod only)",
    )

    # =========================================================================
    # DATABASE
    # =========================================================================

    DATABASE_URL: str = Field(default="", description="Postgres connection string")
    DB_POOL_MIN_SIZE: int = Field(default=1, ge=1)
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1)
    DB_CONNECT_ATTEMPTS: int = Field(
        default=5,
        ge=1,
        description="Startup connection attempts before halting",
    )

    # =========================================================================
    # INGESTION
    # =========================================================================

    PUBLISH_HMAC_KEY: Optional[str] = Field(
        default=None,
        description="Shared secret for X-Signature (sha256=<hex>)",
    )
    MAX_LINE_BYTES: int = Field(default=100_000, ge=1)
    MAX_BODY_BYTES: int = Field(default=5 * 1024 * 1024, ge=1)
    INGEST_BATCH_POLICY: Literal["strict", "lenient"] = Field(
        default="strict",
        description="strict: first bad line rejects the batch; lenient: bad lines reported and skipped",
    )

    # =========================================================================
    # ADMIN
    # =========================================================================

    ADMIN_API_KEY: Optional[str] = Field(default=None)

    # =========================================================================
    # OUTBOX DRAIN
    # =========================================================================

    OUTBOX_BATCH_SIZE: int = Field(default=10, ge=1)
    OUTBOX_POLL_INTERVAL: float = Field(default=5.0, gt=0)
    OUTBOX_CONCURRENCY: int = Field(default=2, ge=1)
    OUTBOX_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    OUTBOX_PROCESSING_TIMEOUT: int = Field(default=300, ge=1)
    OUTBOX_RETRY_BASE_DELAY: float = Field(default=5.0, ge=0)
    OUTBOX_RETRY_MAX_DELAY: float = Field(default=900.0, ge=0)
    OUTBOX_EVENT_TYPES: str = Field(
        default="all",
        description="Comma-separated event types this worker drains, or 'all'",
    )

    PROJECTOR_URL: Optional[str] = Field(default=None)
    PROJECTOR_SECRET: Optional[str] = Field(default=None)
    PROJECTOR_TIMEOUT: float = Field(default=10.0, gt=0)

    WORKER_ID: str = Field(default_factory=lambda: f"outbox-{uuid.uuid4().hex[:8]}")

    # =========================================================================
    # SERVER
    # =========================================================================

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8080)

    @model_validator(mode="after")
    def _validate_production(self) -> "Settings":
        """Refuse to boot a production process without a store or a secret."""
        if self.ENVIRONMENT != "prod":
            return self

        missing = []
        if not self.DATABASE_URL:
            missing.append("DATABASE_URL")
        if not self.PUBLISH_HMAC_KEY:
            missing.append("PUBLISH_HMAC_KEY")
        if missing:
            raise ValueError(f"Missing required production settings: {', '.join(missing)}")
        return self

    # =========================================================================
    # DERIVED
    # =========================================================================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "prod"

    @property
    def json_logs(self) -> bool:
        if self.LOG_JSON is not None:
            return self.LOG_JSON
        return self.is_production

    @property
    def outbox_event_types(self) -> list[str] | None:
        """Event types to drain, or None for all."""
        raw = [t.strip() for t in self.OUTBOX_EVENT_TYPES.split(",") if t.strip()]
        if not raw or raw == ["all"]:
            return None
        return raw


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()  # type: ignore[call-arg]


def reset_settings() -> None:
    """Clear the cached settings (for testing)."""
    get_settings.cache_clear()


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure application logging based on settings.

    In production, uses structured JSON logging; in development, colored
    console output.
    """
    if settings is None:
        settings = get_settings()

    configure_structured_logging(
        level=settings.LOG_LEVEL,
        json_output=settings.json_logs,
        service_name=os.getenv("CROUTONS_SERVICE", "croutons"),
    )

    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
