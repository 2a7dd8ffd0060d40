"""Application configuration."""
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_env: str = "development"
    log_level: str = "INFO"
    json_logs: bool = False

    # Database - required
    database_url: str = Field(
        ...,
        description="Database connection URL (required)",
    )
    db_pool_size: int = Field(
        default=20,
        description="DB connection pool size",
    )
    db_max_overflow: int = Field(
        default=10,
        description="Max overflow connections",
    )
    db_pool_timeout: int = Field(
        default=30,
        description="Pool connection timeout in seconds",
    )
    db_pool_recycle: int = Field(
        default=1800,
        description="Connection recycle time in seconds",
    )
    db_echo: bool = False
    lock_timeout_ms: int = Field(
        default=5000,
        description="Row lock wait limit per unit of work (PostgreSQL only)",
    )

    # Redis - optional, events stay in-process without it
    redis_url: str | None = Field(
        default=None,
        description="Redis connection URL for the domain event stream",
    )
    event_stream_key: str = "tourney:events"
    event_stream_max_len: int = Field(
        default=10000,
        description="Approximate max length of the event stream",
    )

    # Tournament rules
    dispute_window_hours: int = Field(
        default=24,
        description="Hours after completion during which a result can still be disputed",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate log level."""
        level = v.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(VALID_LOG_LEVELS)}")
        return level

    @field_validator("dispute_window_hours", "lock_timeout_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production environment."""
        if self.app_env == "production":
            if self.db_echo:
                raise ValueError(
                    "db_echo must be False in production environment"
                )
            if self.database_url.startswith("sqlite"):
                raise ValueError(
                    "SQLite cannot provide row locks; use PostgreSQL in production"
                )

        return self

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
