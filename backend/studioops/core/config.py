# backend/studioops/core/config.py
import logging
import os
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development",
        description="Deployment environment name",
    )
    log_level: str = Field(default="INFO", description="Root log level for the API process")

    # Database
    database_url: str = Field(
        default="sqlite:///./studioops.db",
        description="SQLAlchemy URL (PostgreSQL in production, SQLite locally)",
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")
    is_testing: bool = Field(default_factory=is_running_tests)

    # Redis resource locks
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis for resource locks")
    resource_lock_enabled: bool = Field(
        default=True,
        description="Acquire Redis locks on contested resources before committing a booking",
    )
    resource_lock_ttl_seconds: int = Field(default=30, ge=1)
    resource_lock_namespace: str = Field(default="studioops")

    # Scheduling rules
    conflict_retry_attempts: int = Field(
        default=1,
        ge=0,
        description="Retries after a lock or serialization failure before surfacing a conflict",
    )
    min_session_minutes: int = Field(default=15, ge=1)
    max_session_minutes: int = Field(default=480, ge=1)
    max_series_occurrences: int = Field(
        default=366,
        ge=1,
        description="Upper bound on occurrences a single recurrence rule may expand to",
    )
    allow_cross_studio_staff_default: bool = Field(
        default=False,
        description="Fallback when a studio has no explicit cross-studio staffing policy",
    )

    # Audit
    audit_enabled: bool = Field(default=True, description="Write audit rows for booking changes")

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("max_session_minutes")
    @classmethod
    def _validate_session_bounds(cls, value: int, info) -> int:
        minimum = info.data.get("min_session_minutes", 1)
        if value < minimum:
            raise ValueError("max_session_minutes must be >= min_session_minutes")
        return value

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


settings = Settings()
logger.info(
    "[CONFIG] environment=%s lock_enabled=%s max_series_occurrences=%s",
    settings.environment,
    settings.resource_lock_enabled,
    settings.max_series_occurrences,
)
