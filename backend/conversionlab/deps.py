"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"

    # Redis (ARQ job queue)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Attribution
    TIME_DECAY_HALF_LIFE_DAYS: float = 7.0
    MAX_JOURNEY_TOUCHPOINTS: int = 100
    TOUCHPOINT_INSERT_RETRIES: int = 5
    DEFAULT_ATTRIBUTION_WINDOW_DAYS: int = 30

    # Experiments
    DEFAULT_CONFIDENCE: float = 95.0
    DEFAULT_POWER: float = 80.0
    # Used for sample-size advice before an experiment has data
    DEFAULT_BASELINE_RATE: float = 0.10
    DEFAULT_DAILY_SESSIONS: int = 1000

    # Reporting thread pool (one task per conversion / experiment)
    ATTRIBUTION_WORKERS: int = 4

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_owner_id(x_owner_id: Optional[str] = Header(default=None, alias="X-Owner-Id")) -> str:
    """Resolve the caller's owner id.

    Authentication happens upstream; the gateway forwards the authenticated
    owner in the X-Owner-Id header.
    """
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing owner identity")
    return x_owner_id.strip()


def get_session_id(x_session_id: Optional[str] = Header(default=None, alias="X-Session-Id")) -> Optional[str]:
    """Opaque visitor session id injected by the edge (None when absent)."""
    if x_session_id is None:
        return None
    return x_session_id.strip() or None
