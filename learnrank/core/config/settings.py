# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

This module provides centralized configuration management for LearnRank.
Settings are loaded from environment variables with sensible defaults.

The Settings class is the main entry point and aggregates all subsettings.
A cached instance is provided via get_settings() for dependency injection.

Example:
    >>> from learnrank.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> settings.kpi.bulk_chunk_size
    500
"""

from functools import lru_cache
from typing import Literal, Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hard per-transaction ceiling of the backing store.
STORE_OPERATION_LIMIT = 500


class DatabaseSettings(BaseSettings):
    """Database configuration for the aggregate store.

    Attributes:
        user: PostgreSQL username.
        password: PostgreSQL password.
        host: Database host address.
        port: Database port number.
        database: Database name.
        url_override: Full async URL; takes precedence over the components
            (e.g. ``sqlite+aiosqlite:///./learnrank.db`` for local runs).
        pool_size: Connection pool size.
        max_overflow: Maximum overflow connections.
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        extra="ignore",
        populate_by_name=True,
    )

    user: str = "learnrank"
    password: SecretStr = SecretStr("learnrank_password")
    host: str = "learnrank-db"
    port: int = 5432
    database: str = "learnrank"
    url_override: str | None = Field(default=None, validation_alias="DB_URL")
    pool_size: int = 10
    max_overflow: int = 20

    @property
    def url(self) -> str:
        """Build the async database URL from components."""
        if self.url_override:
            return self.url_override
        pwd = self.password.get_secret_value()
        return f"postgresql+asyncpg://{self.user}:{pwd}@{self.host}:{self.port}/{self.database}"

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured URL targets SQLite."""
        return self.url.startswith("sqlite")


class RedisSettings(BaseSettings):
    """Redis configuration for the Dramatiq broker.

    Attributes:
        host: Redis server host.
        port: Redis server port.
        password: Redis password.
        database: Redis database number.
    """

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        extra="ignore",
    )

    host: str = "learnrank-redis"
    port: int = 6379
    password: SecretStr = SecretStr("learnrank_redis_password")
    database: int = 0

    @property
    def url(self) -> str:
        """Build the Redis connection URL."""
        pwd = self.password.get_secret_value()
        return f"redis://:{pwd}@{self.host}:{self.port}/{self.database}"


class KPISettings(BaseSettings):
    """KPI aggregation and ranking configuration.

    Attributes:
        bulk_chunk_size: Operations per atomic transaction (<= 500).
        bulk_max_retries: Additional attempts for a failed chunk.
        bulk_retry_delay_seconds: Base delay; attempt N waits N * base.
        history_max_weeks: Position-history sliding window length.
        ranking_timeout_seconds: Upper bound for one ranking scan.
        ranking_staleness_minutes: Age after which a persisted ranking
            table is recomputed on read.
        max_conflict_retries: Re-read attempts on version conflicts.
        defer_ranking: Run ranking refresh off the event path.
        subject_table_limit: Entries kept in a persisted subject table.
        unit_table_limit: Entries kept in a persisted unit table.
    """

    model_config = SettingsConfigDict(
        env_prefix="KPI_",
        extra="ignore",
    )

    bulk_chunk_size: int = Field(default=STORE_OPERATION_LIMIT, ge=1, le=STORE_OPERATION_LIMIT)
    bulk_max_retries: int = Field(default=3, ge=0)
    bulk_retry_delay_seconds: float = Field(default=1.0, ge=0)
    history_max_weeks: int = Field(default=12, ge=1)
    ranking_timeout_seconds: float = Field(default=30.0, gt=0)
    ranking_staleness_minutes: int = Field(default=10, ge=0)
    max_conflict_retries: int = Field(default=5, ge=0)
    defer_ranking: bool = False
    subject_table_limit: int = 100
    unit_table_limit: int = 50


class WorkerSettings(BaseSettings):
    """Background worker configuration.

    Attributes:
        processes: Number of worker processes.
        threads: Number of threads per process.
        recompute_interval_minutes: Period of the scheduled institution
            ranking recompute.
        directory_factory: Import path (``module:callable``) of a factory
            returning the unit, roster and catalog directory used by workers.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKER_",
        extra="ignore",
    )

    processes: int = 2
    threads: int = 4
    recompute_interval_minutes: int = 10
    directory_factory: str | None = None


class Settings(BaseSettings):
    """Main application settings aggregating all subsettings.

    Use get_settings() to obtain a cached instance.

    Attributes:
        environment: Current environment (development, staging, production).
        debug: Enable debug mode.
        log_level: Logging level.
        db: Database settings.
        redis: Redis settings.
        kpi: KPI engine settings.
        worker: Background worker settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "DEBUG"

    db: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kpi: KPISettings = Field(default_factory=KPISettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production against SQLite.
        """
        if self.environment == "production" and self.db.is_sqlite:
            raise ValueError(
                "SQLite is not supported in production. "
                "Set DB_URL or the DB_* components to a PostgreSQL server."
            )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Call clear_settings_cache() if you need to reload settings.

    Returns:
        Cached Settings instance.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing or dynamic configuration updates.
    """
    get_settings.cache_clear()
