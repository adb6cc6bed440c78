"""
Runtime configuration.

Values come from environment variables (or a local .env file) and are
cached for the lifetime of the process.
"""

import functools

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger sync settings."""

    API_URL: str = Field(default="http://localhost:3000", description="Remote ledger service base URL")
    API_TIMEOUT: float = Field(default=30.0, description="Per-request timeout in seconds")

    DATABASE_URL: str = Field(
        default="sqlite:///ledger_sync.db",
        description="Local database holding snapshots and the outbox",
    )
    SNAPSHOT_BACKEND: str = Field(default="sql", description="Snapshot store backend (sql or redis)")
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    NAMESPACE: str = Field(default="ledger", description="Prefix for every persisted key")

    OUTBOX_MAX_ATTEMPTS: int = Field(default=8, ge=1)
    OUTBOX_BACKOFF_BASE: float = Field(default=1.0, gt=0)
    OUTBOX_BACKOFF_MAX: float = Field(default=300.0, gt=0)
    RELAY_POLL_INTERVAL: float = Field(default=5.0, gt=0)

    RESYNC_KEEP_UNSYNCED: bool = Field(
        default=False,
        description="Keep local records whose create is still pending when a resync replaces a collection",
    )

    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        extra="ignore",
    )


@functools.lru_cache()
def get_settings() -> Settings:
    """Get settings (cached)."""
    return Settings()
