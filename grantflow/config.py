"""Runtime configuration loaded from environment variables."""

import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """grantflow settings, read from ``GRANTFLOW_*`` variables or a .env file."""

    model_config = SettingsConfigDict(env_prefix="GRANTFLOW_", env_file=".env", extra="ignore")

    # Status-change emails to students
    ENABLE_NOTIFICATIONS: bool = True

    # Collaborator timeouts in seconds; unset means wait indefinitely
    STORAGE_TIMEOUT_SECONDS: Optional[float] = 30.0
    PERSISTENCE_TIMEOUT_SECONDS: Optional[float] = 10.0
    NOTIFICATION_TIMEOUT_SECONDS: Optional[float] = 10.0

    # Attachment slots reconciled in parallel per request
    SLOT_WORKERS: int = 4

    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Set the ``grantflow`` logger level from settings."""
    settings = settings or get_settings()
    logging.getLogger("grantflow").setLevel(settings.LOG_LEVEL.upper())


__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
]
