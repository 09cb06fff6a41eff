"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")

from credit_ledger.main import app
from credit_ledger.db.session import get_db
from credit_ledger.db import redis as redis_module
from credit_ledger.models import Base
from credit_ledger.models.credit_balance import CreditBalance, CycleSource
from credit_ledger.models.user import User


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

INTERNAL_HEADERS = {"X-Internal-Api-Key": os.environ["INTERNAL_API_KEY"]}


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def session_factory(db_session: Session):
    """Session factory bound to the same in-memory database (for workers that open their own sessions)"""
    return TestSessionLocal


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)

    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry, schema creation and background loops in tests
        with patch('credit_ledger.core.otel.initialize_otel', return_value=False):
            with patch('credit_ledger.core.otel.setup_otel_logging', return_value=False):
                with patch('credit_ledger.core.otel.instrument_sqlalchemy'):
                    with patch('credit_ledger.main.init_db'):
                        with patch('credit_ledger.main.start_background_tasks', return_value=[]):
                            with TestClient(app) as test_client:
                                yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def internal_headers():
    return dict(INTERNAL_HEADERS)


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """User who signed up a few days ago"""
    user = User(email="reader@example.com", created_at=datetime.now(timezone.utc) - timedelta(days=3))
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """Second user for ownership tests"""
    user = User(email="writer@example.com", created_at=datetime.now(timezone.utc) - timedelta(days=40))
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def make_balance(db_session: Session):
    """Factory for a balance row whose current window contains now"""

    def _make(
        user: User,
        monthly_allowance: int = 10,
        bonus_total: int = 5,
        tier: str = "basic",
        cycle_source: str = CycleSource.SUBSCRIPTION,
        cycle_start: datetime = None,
        cycle_end: datetime = None,
        **columns
    ) -> CreditBalance:
        now = datetime.now(timezone.utc)
        balance = CreditBalance(
            user_id=user.id,
            tier=tier,
            monthly_allowance=monthly_allowance,
            monthly_used=columns.pop("monthly_used", 0),
            reserved_monthly=columns.pop("reserved_monthly", 0),
            bonus_total=bonus_total,
            bonus_used=columns.pop("bonus_used", 0),
            reserved_bonus=columns.pop("reserved_bonus", 0),
            cycle_start=cycle_start or now - timedelta(days=1),
            cycle_end=cycle_end or now + timedelta(days=29),
            cycle_source=cycle_source,
            **columns
        )
        db_session.add(balance)
        db_session.commit()
        db_session.refresh(balance)
        return balance

    return _make


@pytest.fixture(scope="function")
def funded_balance(test_user: User, make_balance) -> CreditBalance:
    """10 monthly + 5 bonus credits, nothing used or reserved"""
    return make_balance(test_user, monthly_allowance=10, bonus_total=5)


def assert_pool_invariants(balance: CreditBalance) -> None:
    assert balance.monthly_used + balance.reserved_monthly <= balance.monthly_allowance
    assert balance.bonus_used + balance.reserved_bonus <= balance.bonus_total
    assert min(balance.monthly_used, balance.reserved_monthly, balance.bonus_used, balance.reserved_bonus) >= 0
