from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic.aliases import AliasChoices
from pydantic_settings import BaseSettings, SettingsConfigDict


BACKEND_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=BACKEND_DIR / ".env", env_file_encoding="utf-8")

    database_url: str

    # Runtime
    environment: str = Field(default="development", validation_alias=AliasChoices("environment", "ENVIRONMENT"))
    frontend_origin: str = Field(
        default="http://localhost:5173",
        validation_alias=AliasChoices("frontend_origin", "FRONTEND_ORIGIN"),
    )

    # Distribution defaults (two-pass: fill every slot to 3 before any slot goes to 6)
    scheduling_strategy: str = Field(
        default="two-pass",
        validation_alias=AliasChoices("scheduling_strategy", "SCHEDULING_STRATEGY"),
    )
    scheduling_first_pass_limit: int = Field(
        default=3,
        ge=1,
        validation_alias=AliasChoices("scheduling_first_pass_limit", "SCHEDULING_FIRST_PASS_LIMIT"),
    )
    scheduling_second_pass_limit: int = Field(
        default=6,
        ge=1,
        validation_alias=AliasChoices("scheduling_second_pass_limit", "SCHEDULING_SECOND_PASS_LIMIT"),
    )
    scheduling_max_sessions_per_day: int = Field(
        default=2,
        ge=1,
        validation_alias=AliasChoices("scheduling_max_sessions_per_day", "SCHEDULING_MAX_SESSIONS_PER_DAY"),
    )
    scheduling_slot_interval_minutes: int = Field(
        default=5,
        ge=1,
        le=60,
        validation_alias=AliasChoices("scheduling_slot_interval_minutes", "SCHEDULING_SLOT_INTERVAL_MINUTES"),
    )

    # Data manager cache + fetch retries
    cache_max_age_seconds: int = Field(
        default=15 * 60,
        ge=0,
        validation_alias=AliasChoices("cache_max_age_seconds", "CACHE_MAX_AGE_SECONDS"),
    )
    fetch_retry_attempts: int = Field(
        default=3,
        ge=1,
        validation_alias=AliasChoices("fetch_retry_attempts", "FETCH_RETRY_ATTEMPTS"),
    )
    fetch_retry_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        validation_alias=AliasChoices("fetch_retry_delay_seconds", "FETCH_RETRY_DELAY_SECONDS"),
    )

    # Instance generation
    instance_weeks_ahead: int = Field(
        default=8,
        ge=1,
        le=52,
        validation_alias=AliasChoices("instance_weeks_ahead", "INSTANCE_WEEKS_AHEAD"),
    )
    instance_page_size: int = Field(
        default=1000,
        ge=1,
        validation_alias=AliasChoices("instance_page_size", "INSTANCE_PAGE_SIZE"),
    )
    instance_batch_size: int = Field(
        default=10,
        ge=1,
        validation_alias=AliasChoices("instance_batch_size", "INSTANCE_BATCH_SIZE"),
    )

    @field_validator("frontend_origin")
    @classmethod
    def _normalize_frontend_origin(cls, v: str) -> str:
        # Starlette CORS expects the Origin to match exactly (no trailing slash).
        return v.strip().rstrip("/")

    @field_validator("scheduling_strategy")
    @classmethod
    def _normalize_scheduling_strategy(cls, v: str) -> str:
        v = (v or "two-pass").strip().lower().replace("_", "-")
        if v not in {"two-pass", "grade-grouped", "even", "spread", "compact"}:
            raise ValueError("SCHEDULING_STRATEGY must be one of two-pass, grade-grouped, even, spread, compact")
        return v

    @field_validator("scheduling_second_pass_limit")
    @classmethod
    def _check_second_pass_limit(cls, v: int, info) -> int:
        first = info.data.get("scheduling_first_pass_limit")
        if first is not None and v < first:
            raise ValueError("SCHEDULING_SECOND_PASS_LIMIT must be >= SCHEDULING_FIRST_PASS_LIMIT")
        return v


settings = Settings()
