from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./timeflow.db"
    provider: str = "google"

    # Google OAuth tokens are minted elsewhere; we only read them.
    google_token_dir: Path = Path.home() / ".timeflow" / "google_tokens"
    webhook_address: str = "http://localhost:8000/webhooks/google"
    webhook_ttl_days: int = 7

    # Dedicated calendar and task list created by /integrations/setup
    managed_container_name: str = "TaskTimeFlow"
    calendar_time_zone: str = "UTC"

    # Conflict resolution
    clock_skew_tolerance_seconds: float = 2.0

    # Run limits; lease TTL = max_run_seconds + lease_margin_seconds
    max_run_seconds: int = 600
    lease_margin_seconds: int = 60

    # Provider calls
    provider_max_attempts: int = 5
    provider_backoff_seconds: float = 1.0
    provider_max_backoff_seconds: float = 30.0
    provider_page_size: int = 250

    # Scopes
    webhook_past_hours: int = 24
    webhook_future_days: int = 7
    default_calendar_window_days: int = 30

    # Background jobs
    stale_mapping_hours: int = 72
    sync_hour: int = 3
    janitor_interval_minutes: int = 15

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def lease_ttl_seconds(self) -> int:
        return self.max_run_seconds + self.lease_margin_seconds


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
