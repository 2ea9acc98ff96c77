"""AppSettings -- quota ledger configuration.

All environment variables are read via pydantic-settings.
DB_URL is required and will cause a startup failure if missing.
"""

import logging

from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class AppSettings(BaseSettings):
    """Quota ledger settings, loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database - Required, application fails to start if missing
    DB_URL: str
    DB_POOL_SIZE: int = 25
    DB_MAX_OVERFLOW: int = 0

    # Authorization oracle
    AUTH_SERVICE_URL: str = "http://auth-service.internal"
    SERVICE_ID: str = "svc_quota_ledger"
    AUTH_TIMEOUT_SECONDS: float = 30.0

    # Logging
    LOG_LEVEL: str = "INFO"


def configure_logging(settings: AppSettings) -> None:
    """Apply LOG_LEVEL to the root logger."""
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format=_LOG_FORMAT)
