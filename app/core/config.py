"""Application configuration via pydantic settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed application configuration."""

    app_env: str = Field("local", alias="APP_ENV")
    app_name: str = "DoseTrack"

    database_url: str = Field("sqlite:///./dosetrack.db", alias="DATABASE_URL")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_format: str = Field("text", alias="LOG_FORMAT")

    horizon_days: int = Field(7, ge=1, le=31, alias="HORIZON_DAYS")
    reminder_lookahead_minutes: int = Field(15, ge=1, alias="REMINDER_LOOKAHEAD_MINUTES")
    scan_interval_seconds: int = Field(60, ge=5, alias="SCAN_INTERVAL_SECONDS")
    scheduler_enabled: bool = Field(True, alias="SCHEDULER_ENABLED")
    missed_grace_minutes: int = Field(60, ge=0, alias="MISSED_GRACE_MINUTES")
    late_threshold_minutes: int = Field(30, ge=0, alias="LATE_THRESHOLD_MINUTES")
    default_snooze_minutes: int = Field(30, ge=1, le=240, alias="DEFAULT_SNOOZE_MINUTES")

    adherence_window_days: int = Field(30, ge=1, alias="ADHERENCE_WINDOW_DAYS")
    prediction_history_days: int = Field(14, ge=1, alias="PREDICTION_HISTORY_DAYS")
    prediction_min_history: int = Field(5, ge=1, alias="PREDICTION_MIN_HISTORY")

    notification_gateway_url: str | None = Field(default=None, alias="NOTIFICATION_GATEWAY_URL")
    risk_scorer_url: str | None = Field(default=None, alias="RISK_SCORER_URL")
    calendar_sync_url: str | None = Field(default=None, alias="CALENDAR_SYNC_URL")
    downstream_timeout_seconds: float = Field(10.0, gt=0, alias="DOWNSTREAM_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parents[2] / ".env",
        case_sensitive=False,
    )

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"text", "json"}:
            raise ValueError("LOG_FORMAT must be 'text' or 'json'")
        return normalized


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()  # type: ignore[call-arg]
