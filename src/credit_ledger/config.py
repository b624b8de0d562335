"""
Credit ledger configuration loaded from environment variables.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings read from ``CREDIT_``-prefixed environment variables or ``.env``."""

    # Persistence; an empty URI selects the in-memory backend
    MONGO_URI: str = ""
    MONGO_DB: str = "credit_management"

    # Audit log (line-delimited JSON)
    AUDIT_LOG_PATH: str = "logs/credit_audit.log"

    # Accounting policy
    DEFAULT_VALIDITY_DAYS: int = 90
    EXPIRING_SOON_DAYS: int = 7
    ALLOW_NEGATIVE_ADJUSTMENTS: bool = False
    LOCK_TIMEOUT_SECONDS: float = 10.0
    TRANSIENT_RETRIES: int = 3
    TRANSIENT_RETRY_BACKOFF_SECONDS: float = 0.05

    # Cache
    PACKAGE_CACHE_TTL_SECONDS: int = 300

    # Expiration sweep schedule (UTC, daily)
    EXPIRATION_SWEEP_HOUR: int = 0
    EXPIRATION_SWEEP_MINUTE: int = 0

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
