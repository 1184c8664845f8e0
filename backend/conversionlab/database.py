"""Database engine, session factory and FastAPI dependency.

WHAT:
    Builds the SQLAlchemy engine from DATABASE_URL and exposes the session
    factory used by routers, workers and the reporting thread pool.

WHY:
    - Routers get a request-scoped session through get_db()
    - Workers and reporting tasks open their own session per job/task, since
      a Session must never be shared between threads

USAGE:
    from conversionlab.database import SessionLocal, get_db, get_sync_session

    with get_sync_session() as db:
        experiments = db.query(Experiment).all()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - conversionlab/services/reporting.py (one session per worker task)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from conversionlab.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Export it or add it to backend/.env."
        )

    # Heroku-style URLs are rejected by SQLAlchemy 1.4+
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# SQLite (tests/dev) does not accept pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,        # Room for the reporting thread pool under load
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in conversionlab.models to keep a single registry
from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCY
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for one request and close it afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, scripts).

    Example:
        with get_sync_session() as db:
            AttributionService(db).calculate_attribution("ord-1", "linear")
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Session factory for endpoints that fan work out to a thread pool.

    Each pooled task opens its own session from this factory.
    """
    return SessionLocal
