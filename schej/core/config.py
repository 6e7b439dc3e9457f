"""Application configuration using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Get the project root directory (two levels up from this file)
PROJECT_ROOT = Path(__file__).parent.parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Google OAuth configuration (refresh-token exchange only)
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_token_endpoint: str = "https://oauth2.googleapis.com/token"
    google_api_base_url: str = "https://www.googleapis.com/calendar/v3"

    # Apple iCloud CalDAV server
    apple_caldav_url: str = "https://caldav.icloud.com"

    # Provider call discipline
    token_refresh_leeway_seconds: int = Field(default=300, ge=0)
    request_timeout_seconds: float = Field(default=15.0, ge=5.0)
    max_concurrency: int = Field(default=8, ge=1)

    # Aggregation defaults
    slot_minutes: int = Field(default=15, ge=1)
    ignore_all_day_events: bool = True

    # Supabase configuration (only needed by SupabaseCredentialStore)
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None

    # Logging
    log_level: str = "INFO"
    # Performance debugging
    enable_timing_logger: bool = False  # Enable detailed timing logs (default: off for production)

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),  # Load from project root .env file
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
