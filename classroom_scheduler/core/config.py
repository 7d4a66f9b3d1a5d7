# classroom_scheduler/core/config.py
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global configuration for the scheduling core.

    Values are loaded from environment variables (or a local `.env` file)
    at runtime and cover:
    - DB connection
    - Occurrence generation limits
    - Booking validation scan range
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "Classroom Scheduler"
    APP_ENV: str = Field("local", description="Environment name: local/dev/stage/prod")

    DB_URL: str = Field(
        "sqlite+aiosqlite:///./classroom_scheduler.db",
        description="SQLAlchemy-compatible async database URL",
    )
    DB_ECHO: bool = Field(
        default=False,
        description="Echo emitted SQL statements (debugging only).",
    )

    DEFAULT_TIME_ZONE: str = Field(
        default="UTC",
        description="IANA zone assigned to meetings created without an explicit zone.",
    )

    MAX_GENERATED_OCCURRENCES: int = Field(
        default=1000,
        ge=1,
        description=(
            "Upper bound on the number of dates a single expansion may produce. "
            "Exceeding it raises WindowExhaustionError instead of looping forever "
            "on an unterminated rule."
        ),
    )
    EXPANSION_HORIZON_DAYS: int = Field(
        default=120,
        ge=1,
        description=(
            "How far past today reconciliation materializes occurrences when no "
            "explicit window is given."
        ),
    )
    BOOKING_SCAN_MARGIN_DAYS: int = Field(
        default=2,
        ge=0,
        description=(
            "Extra days on each side of a candidate's date scanned for existing "
            "occurrences (covers zone offsets and long buffers)."
        ),
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Cached accessor for application settings.

    Settings are read and validated once per process; call
    `get_settings.cache_clear()` after changing the environment in tests.
    """
    return Settings()
