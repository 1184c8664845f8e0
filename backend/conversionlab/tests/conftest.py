"""Pytest configuration for conversionlab integration tests

WHAT: Provides shared fixtures for service-level and HTTP endpoint tests
WHY: Ensures consistent test setup, database isolation, and settings
REFERENCES:
    - conversionlab/main.py: FastAPI application
    - conversionlab/database.py: Database configuration
    - conversionlab/deps.py: Settings and identity dependencies
"""

import pytest
import os
from datetime import timedelta
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("ENVIRONMENT", "test")


OWNER_ID = "owner-123"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine.

    StaticPool keeps one connection, so the TestClient's worker threads see
    the same in-memory database as the test.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    from conversionlab.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(test_session_factory) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    session = test_session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite for tests that use several threads and sessions."""
    from conversionlab.database import Base

    engine = create_engine(
        f"sqlite:///{tmp_path / 'conversionlab.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Settings with defaults, independent of the developer's .env."""
    from conversionlab.deps import Settings

    return Settings(_env_file=None)


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, test_session_factory, settings):
    """Create FastAPI test application."""
    from conversionlab.main import create_app
    from conversionlab.database import get_db, get_session_factory
    from conversionlab.deps import get_settings

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_session_factory] = lambda: test_session_factory
    test_app.dependency_overrides[get_settings] = lambda: settings

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


@pytest.fixture
def owner_headers():
    return {"X-Owner-Id": OWNER_ID}


# ============================================================================
# Data Fixtures
# ============================================================================

@pytest.fixture
def purchase_goal(test_db_session):
    """Active purchase goal with a 30 day window."""
    from conversionlab.services.conversion_service import ConversionService

    return ConversionService(test_db_session).create_goal(
        owner_id=OWNER_ID,
        name="Checkout",
        goal_type="purchase",
        goal_value=50.0,
        attribution_window=30,
    )


@pytest.fixture
def ab_variants():
    return [
        {"name": "control", "short_code": "lp-a", "traffic_allocation": 50, "is_control": True},
        {"name": "bold", "short_code": "lp-b", "traffic_allocation": 50},
    ]


@pytest.fixture
def make_click():
    """Factory for ClickEvents; `when` is a naive UTC datetime."""
    from conversionlab.event_schema import CampaignFields, ClickEvent, utcnow

    def _make(session_id, short_code="promo", when=None, source=None, medium=None, event_id=None):
        return ClickEvent(
            session_id=session_id,
            short_code=short_code,
            timestamp=when or utcnow(),
            campaign=CampaignFields(source=source, medium=medium),
            event_id=event_id,
        )

    return _make


@pytest.fixture
def days_ago():
    """Naive UTC timestamp `days` (and `hours`) before now."""
    from conversionlab.event_schema import utcnow

    def _ago(days, hours=0):
        return utcnow() - timedelta(days=days, hours=hours)

    return _ago
