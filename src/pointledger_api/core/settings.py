from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    service_name: str = "pointledger-api"
    database_url: str = "sqlite+aiosqlite:///./pointledger.db"
    database_echo: bool = False
    api_key: str | None = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Loyalty job scheduler
    loyalty_job_scheduler_enabled: bool = False
    loyalty_job_schedule_path: str = "config/schedules.toml"

    # Redemption lifecycle
    redemption_ttl_hours: int = Field(default=24, ge=1)
    redemption_expiry_refund: bool = True
    redemption_code_max_attempts: int = Field(default=5, ge=1)

    # Purchase claims
    claim_processing_window_hours: int = Field(default=48, ge=1)
    claim_submission_window_days: int = Field(default=7, ge=1)
    claim_daily_limit: int = Field(default=3, ge=1)
    claim_duplicate_window_minutes: int = Field(default=30, ge=0)
    claim_channels: list[str] = Field(default_factory=lambda: ["physical_store", "online", "whatsapp"])
    claim_default_channel: str = "physical_store"

    # Points expiry
    expiry_warning_days: int = Field(default=7, ge=1)
    expiry_sweep_batch_size: int = Field(default=500, ge=1)

    # Outbound notifications
    notification_webhook_url: str | None = None
    notification_webhook_token: str | None = None
    notification_timeout_seconds: float = 5.0

    # Tracing
    otel_console_exporter: bool = False

    @field_validator("claim_channels", mode="before")
    @classmethod
    def _parse_channel_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
