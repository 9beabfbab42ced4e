"""Application settings and configuration.

This module defines all configuration options for the Tally Stage application.
Settings are loaded from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files. The
    isolation level and change-feed retention fields are deliberately explicit:
    they are the assumptions under which the counter strategies are evaluated.
    """

    # Application metadata
    app_name: str = Field(default="Tally Stage", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./tally.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")
    # None leaves the driver default in place (SERIALIZABLE for SQLite,
    # READ COMMITTED for Postgres).
    record_store_isolation_level: str | None = Field(
        default=None,
        alias="RECORD_STORE_ISOLATION_LEVEL",
    )

    # Counter maintenance strategy used by the HTTP and CLI harnesses
    counter_strategy: Literal["unprotected", "transactional", "event", "on_demand"] = Field(
        default="on_demand",
        alias="COUNTER_STRATEGY",
    )
    atomic_increments: bool = Field(default=True, alias="ATOMIC_INCREMENTS")

    # Transactional unit policy
    transaction_timeout_seconds: float = Field(default=5.0, alias="TRANSACTION_TIMEOUT_SECONDS")
    transaction_max_retries: int = Field(default=3, alias="TRANSACTION_MAX_RETRIES")
    transaction_retry_backoff_seconds: float = Field(
        default=0.05,
        alias="TRANSACTION_RETRY_BACKOFF_SECONDS",
    )

    # Change feed and listener settings
    change_feed_poll_interval_seconds: float = Field(
        default=0.5,
        alias="CHANGE_FEED_POLL_INTERVAL_SECONDS",
    )
    change_feed_batch_size: int = Field(default=100, alias="CHANGE_FEED_BATCH_SIZE")
    # None keeps every event forever; a number prunes older events, which can
    # open gaps for a listener that was down long enough.
    change_feed_retention_events: int | None = Field(
        default=None,
        alias="CHANGE_FEED_RETENTION_EVENTS",
    )
    change_feed_consumer_name: str = Field(
        default="aggregate-listener",
        alias="CHANGE_FEED_CONSUMER_NAME",
    )

    # Dedup lock backend for the event-driven listener
    dedup_backend: Literal["database", "redis", "memory"] = Field(
        default="database",
        alias="DEDUP_BACKEND",
    )
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    dedup_ttl_seconds: int = Field(default=86_400, alias="DEDUP_TTL_SECONDS")

    # Drift detector schedule
    reconcile_interval_seconds: float = Field(default=0.0, alias="RECONCILE_INTERVAL_SECONDS")
    reconcile_repair: bool = Field(default=True, alias="RECONCILE_REPAIR")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations.
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def change_feed_may_drop_events(self) -> bool:
        """Return True when the configured retention can lose unapplied events."""
        return self.change_feed_retention_events is not None


settings = Settings()
