"""Ingestion service configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Nested groups are populated from their own env-var prefixes.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class GmailConfig(BaseSettings):
    """Mailbox API and OAuth token endpoint settings."""

    model_config = {"env_prefix": "GMAIL_"}

    client_id: str = Field(default="", description="OAuth client ID used for token refresh")
    client_secret: SecretStr = Field(
        default=SecretStr(""),
        description="OAuth client secret used for token refresh",
    )
    token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint",
    )
    api_base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1",
        description="Base URL of the mailbox REST API",
    )
    timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")
    max_results: int = Field(
        default=20,
        description="Maximum message IDs requested per search expression",
    )
    lookback_days: int = Field(
        default=30,
        description="Window of the trailing recency-bounded search expression",
    )
    refresh_skew_seconds: int = Field(
        default=60,
        description="Tokens expiring within this margin are refreshed early",
    )


class DatabaseConfig(BaseSettings):
    """Async SQLAlchemy connection settings."""

    model_config = {"env_prefix": "DATABASE_"}

    url: str = Field(
        default="sqlite+aiosqlite:///./spendwise.db",
        description="Async SQLAlchemy URL for the ledger, credential and expense tables",
    )
    echo: bool = Field(default=False, description="Echo SQL statements to the log")
    create_tables: bool = Field(
        default=True,
        description="Create missing tables at startup",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings for token refresh, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum token refresh attempts")
    initial_wait_seconds: float = Field(
        default=0.5,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=10.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class IngestSettings(BaseSettings):
    """Top-level settings for the ingestion service.

    Root env vars are prefixed with ``SPENDWISE_``.
    Example: ``SPENDWISE_COOLDOWN_SECONDS=120``
    """

    model_config = SettingsConfigDict(env_prefix="SPENDWISE_")

    # --- Import runs ----------------------------------------------------
    cooldown_seconds: int = Field(
        default=60,
        description="Minimum seconds between the end of one run and the next for an account",
    )
    run_registry: Literal["memory", "database"] = Field(
        default="memory",
        description="Where single-flight state lives (database for multi-instance deployments)",
    )
    stale_run_seconds: int = Field(
        default=3600,
        description="Database registry only: an active run older than this may be taken over",
    )
    allow_ledger_reset: bool = Field(
        default=False,
        description="Enable the testing-only bulk clear of processed-message records",
    )

    # --- Server -----------------------------------------------------------
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(
        default=True,
        description="Use JSON log output (True for prod, False for dev)",
    )

    gmail: GmailConfig = Field(default_factory=GmailConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
