"""Pytest configuration for winback integration tests

WHAT: Provides shared fixtures for service, pipeline and HTTP endpoint tests
WHY: Ensures consistent test setup, database isolation, a frozen clock and
     fake collaborators (SMS transport, discount issuer)
REFERENCES:
    - winback/main.py: FastAPI application
    - winback/services/subscriber_store.py: Store under test
    - winback/services/recovery_pipeline.py: Cycle wiring
"""

import pytest
import os
import itertools
from datetime import datetime, timedelta, timezone
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

# Set test environment (winback.database resolves DATABASE_URL at import time)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)

from winback.deps import RecoveryConfig, Settings  # noqa: E402
from winback.models import Base, MessageStatusEnum, SubscriberStatusEnum  # noqa: E402
from winback.services.clock import FixedClock  # noqa: E402
from winback.services.recovery_pipeline import RecoveryPipeline  # noqa: E402
from winback.services.shopify_discount_client import DiscountResult  # noqa: E402
from winback.services.subscriber_store import SubscriberStore  # noqa: E402
from winback.services.telnyx_client import TransportResult  # noqa: E402


# 14:00 America/New_York (EDT), inside the default 09:00-21:00 window
DEFAULT_NOW = datetime(2026, 6, 10, 18, 0, tzinfo=timezone.utc)

ADMIN_TOKEN = "test-admin-token"
SHOPIFY_SECRET = "shpss_test_secret"


# ============================================================================
# Fakes
# ============================================================================

class FakeTransport:
    """In-memory SMS transport; records every send."""

    def __init__(self):
        self.sent = []
        self.fail_with = None
        self.status = "queued"

    async def send(self, to, text):
        self.sent.append((to, text))
        if self.fail_with:
            return TransportResult(success=False, error=self.fail_with)
        return TransportResult(success=True, message_id=f"msg-{len(self.sent)}", status=self.status)


class FakeDiscountClient:
    """In-memory discount issuer; records every registration attempt."""

    def __init__(self):
        self.calls = []
        self.fail_with = None

    async def create_code(self, code, percent, starts_at, ends_at):
        self.calls.append({"code": code, "percent": percent, "starts_at": starts_at, "ends_at": ends_at})
        if self.fail_with:
            return DiscountResult(success=False, error=self.fail_with)
        n = len(self.calls)
        return DiscountResult(success=True, id=f"dc-{n}", price_rule_id=f"pr-{n}")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FixedClock(DEFAULT_NOW)


@pytest.fixture
def config():
    return RecoveryConfig()


@pytest.fixture
def store(test_db_session, clock):
    return SubscriberStore(test_db_session, clock=clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def discount_client():
    return FakeDiscountClient()


@pytest.fixture
def make_subscriber(store, clock):
    """Factory for subscribers whose first message was delivered 7 hours ago."""
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        fields = dict(
            phone=f"+1201555{n:04d}",
            status=SubscriberStatusEnum.active,
            first_message_sent=True,
            first_message_status=MessageStatusEnum.delivered,
            first_message_at=clock.now() - timedelta(hours=7),
            first_message_id=f"first-msg-{n}",
            primary_code=f"JP-TEST{n}",
            primary_percent=15,
        )
        fields.update(overrides)
        return store.create(**fields)

    return _make


@pytest.fixture
def make_pipeline(test_db_session, clock, transport, discount_client):
    """Factory for a pipeline wired to the fakes; sleeps are recorded, not awaited."""

    def _make(**config_overrides):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        pipeline = RecoveryPipeline.build(
            test_db_session,
            discount_client=discount_client,
            transport=transport,
            config=RecoveryConfig(**config_overrides),
            clock=clock,
            sleep=fake_sleep,
        )
        pipeline.sleeps = sleeps
        return pipeline

    return _make


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def test_settings():
    return Settings(
        ADMIN_API_TOKEN=ADMIN_TOKEN,
        SHOPIFY_API_SECRET=SHOPIFY_SECRET,
        SENTRY_DSN=None,
        TELNYX_API_KEY=None,
        TELNYX_FROM_NUMBER=None,
        SHOPIFY_STORE_DOMAIN=None,
        SHOPIFY_ADMIN_ACCESS_TOKEN=None,
    )


@pytest.fixture
def app(test_db_session, test_settings):
    """Create FastAPI test application."""
    from winback.main import create_app
    from winback.database import get_db
    from winback.deps import get_settings

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: test_settings

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}
