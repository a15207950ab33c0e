"""Configuration for the lock manager service."""

from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict


class LockProvider(str, Enum):
    """Hardware provider a lock is bound to."""

    AUGUST = "AUGUST"
    SCHLAGE = "SCHLAGE"
    YALE = "YALE"
    LEVEL = "LEVEL"
    OTHER = "OTHER"
    MANUAL = "MANUAL"  # Untracked lock, operator attests to physical state


# Providers reachable through the Home Assistant bridge
BRIDGED_PROVIDERS: tuple[LockProvider, ...] = (
    LockProvider.AUGUST,
    LockProvider.SCHLAGE,
    LockProvider.YALE,
    LockProvider.LEVEL,
    LockProvider.OTHER,
)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LOCKS_",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./lock_manager.db"

    # Hard timeout for a single provider lock/unlock/status call (seconds)
    provider_timeout_seconds: float = 10.0

    # Zone used for scheduled codes when a lock has none of its own
    household_timezone: str = "UTC"

    # Provider status polling (seconds, 0 disables)
    status_poll_interval: int = 300

    # Activity pagination
    activity_default_limit: int = 50
    activity_max_limit: int = 200

    # Home Assistant bridge used to reach provider-bound locks
    ha_url: str = ""
    ha_token: str = ""
    listen_for_events: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8099
    debug: bool = False


# Global settings instance
settings = Settings()
