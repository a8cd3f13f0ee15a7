"""Application configuration management."""

import hashlib
import os
import secrets
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


# Session secret used when no encryption key exists yet (generated once per process)
_fallback_session_secret: Optional[str] = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/calsync.db"

    # Encryption
    encryption_key_file: str = "/secrets/encryption.key"

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"

    # Session
    session_secret_key: Optional[str] = None  # Derived from encryption key if not set
    session_expire_days: int = 7

    # Scheduling
    sync_interval_minutes: int = 5
    job_lock_timeout_minutes: int = 30

    # Per-run work bounds
    sync_max_items_per_counter: float = 20
    sync_success_increment: float = 1.0
    sync_failure_increment: float = 0.5
    sync_batch_size: int = 20
    recurring_horizon_months: int = 6

    # Calendar provider
    provider_page_size: int = 10
    provider_calendar_page_size: int = 50
    provider_timeout_seconds: int = 30
    event_source_title: str = "CalSync"
    accepted_event_types: list[str] = ["default"]

    # Tenant entity configuration
    generic_activity_types: list[str] = ["Task"]

    # Retention settings (days)
    sync_log_retention_days: int = 90

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_encryption_key() -> bytes:
    """Load encryption key from file."""
    settings = get_settings()
    key_file = settings.encryption_key_file

    if not os.path.exists(key_file):
        raise RuntimeError(f"Encryption key file not found at {key_file}")

    with open(key_file, "rb") as f:
        key = f.read()
        # Only strip trailing newlines, the key itself may be binary
        while key and key[-1:] in (b"\n", b"\r"):
            key = key[:-1]

    if len(key) < 32:
        raise RuntimeError("Invalid encryption key: must be at least 32 bytes")

    return key


def get_session_secret() -> str:
    """Get session secret key, derived from encryption key if not set."""
    settings = get_settings()
    if settings.session_secret_key:
        return settings.session_secret_key

    try:
        key = get_encryption_key()
        return hashlib.sha256(key + b"session_secret").hexdigest()
    except RuntimeError:
        global _fallback_session_secret
        if _fallback_session_secret is None:
            _fallback_session_secret = secrets.token_urlsafe(32)
        return _fallback_session_secret
