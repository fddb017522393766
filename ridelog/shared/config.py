"""
Environment configuration

All settings come from environment variables. Settings are read once at
startup into an immutable object and handed to the application context.
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_DATABASE_URL = "postgresql+psycopg2://ridelog_user:changeme@db:5432/ridelog_db"
DEFAULT_BROKER_URL = "redis://localhost:6379/0"
DEFAULT_GARMIN_API_BASE = "https://apis.garmin.com/wellness-api"
DEFAULT_GARMIN_TOKEN_URL = "https://diauth.garmin.com/di-oauth2-service/oauth/token"
DEFAULT_NOMINATIM_URL = "https://nominatim.openstreetmap.org"
DEFAULT_GEOCODE_USER_AGENT = "RideLog/1.0 (bike ride tracking)"


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {value!r}")


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _list_env(name: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in os.getenv(name, "").split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    environment: str = "development"
    log_level: str = "INFO"
    internal_api_key: Optional[str] = None
    frontend_url: Optional[str] = None
    cors_extra_origins: Tuple[str, ...] = ()

    strava_client_id: Optional[str] = None
    strava_client_secret: Optional[str] = None
    strava_webhook_verify_token: Optional[str] = None

    garmin_client_id: Optional[str] = None
    garmin_client_secret: Optional[str] = None
    garmin_token_url: str = DEFAULT_GARMIN_TOKEN_URL
    garmin_api_base: str = DEFAULT_GARMIN_API_BASE
    garmin_backfill_chunk_days: int = 30

    celery_broker_url: str = DEFAULT_BROKER_URL
    # Run queued tasks inline instead of on a worker (local stacks and tests)
    celery_always_eager: bool = False
    event_max_attempts: int = 3
    event_retry_backoff_seconds: int = 30

    geocoding_enabled: bool = True
    nominatim_url: str = DEFAULT_NOMINATIM_URL
    geocode_user_agent: str = DEFAULT_GEOCODE_USER_AGENT

    http_timeout_seconds: int = 10

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            internal_api_key=os.getenv("INTERNAL_API_KEY"),
            frontend_url=os.getenv("FRONTEND_URL"),
            cors_extra_origins=_list_env("CORS_EXTRA_ORIGINS"),
            strava_client_id=os.getenv("STRAVA_CLIENT_ID"),
            strava_client_secret=os.getenv("STRAVA_CLIENT_SECRET"),
            strava_webhook_verify_token=os.getenv("STRAVA_WEBHOOK_VERIFY_TOKEN"),
            garmin_client_id=os.getenv("GARMIN_CLIENT_ID"),
            garmin_client_secret=os.getenv("GARMIN_CLIENT_SECRET"),
            garmin_token_url=os.getenv("GARMIN_TOKEN_URL", DEFAULT_GARMIN_TOKEN_URL),
            garmin_api_base=os.getenv("GARMIN_API_BASE", DEFAULT_GARMIN_API_BASE).rstrip("/"),
            garmin_backfill_chunk_days=_int_env("GARMIN_BACKFILL_CHUNK_DAYS", 30),
            celery_broker_url=os.getenv("CELERY_BROKER_URL", DEFAULT_BROKER_URL),
            celery_always_eager=_bool_env("CELERY_ALWAYS_EAGER", False),
            event_max_attempts=_int_env("EVENT_MAX_ATTEMPTS", 3),
            event_retry_backoff_seconds=_int_env("EVENT_RETRY_BACKOFF_SECONDS", 30),
            geocoding_enabled=_bool_env("GEOCODING_ENABLED", True),
            nominatim_url=os.getenv("NOMINATIM_URL", DEFAULT_NOMINATIM_URL).rstrip("/"),
            geocode_user_agent=os.getenv("GEOCODE_USER_AGENT", DEFAULT_GEOCODE_USER_AGENT),
            http_timeout_seconds=_int_env("HTTP_TIMEOUT_SECONDS", 10),
        )
