"""Concurrent admission against a real PostgreSQL database

SQLite ignores row locks, so these run only when TEST_POSTGRES_URL points at
a scratch database.
"""
import os
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from credit_ledger.models import Base
from credit_ledger.models.credit_balance import CreditBalance, CycleSource
from credit_ledger.models.credit_reservation import CreditReservation, ReservationStatus
from credit_ledger.models.user import User
from credit_ledger.services.reservation_service import commit, release, reserve

POSTGRES_URL = os.getenv("TEST_POSTGRES_URL")

pytestmark = [
    pytest.mark.postgres,
    pytest.mark.skipif(not POSTGRES_URL, reason="TEST_POSTGRES_URL not set"),
]


@pytest.fixture
def pg_session_factory():
    engine = create_engine(POSTGRES_URL, pool_size=20)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def pg_user_id(pg_session_factory):
    db = pg_session_factory()
    try:
        now = datetime.now(timezone.utc)
        user = User(email="concurrent@example.com", created_at=now - timedelta(days=3))
        db.add(user)
        db.flush()
        db.add(CreditBalance(
            user_id=user.id, tier="basic", monthly_allowance=4, bonus_total=1,
            cycle_start=now - timedelta(days=1), cycle_end=now + timedelta(days=29),
            cycle_source=CycleSource.SUBSCRIPTION,
        ))
        db.commit()
        return user.id
    finally:
        db.close()


def _run_concurrently(count, target):
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(index):
        barrier.wait()
        results[index] = target(index)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


def _with_session(factory, operation):
    db = factory()
    try:
        return operation(db)
    finally:
        db.close()


@pytest.mark.critical
class TestConcurrentAdmission:
    def test_exactly_one_full_reservation_is_admitted(self, pg_session_factory, pg_user_id):
        results = _run_concurrently(8, lambda i: _with_session(
            pg_session_factory, lambda db: reserve(pg_user_id, f"req-{i}", 5, db)
        ))

        assert sum(1 for r in results if r["ok"]) == 1
        assert all(r["reason"] == "insufficient_credits" for r in results if not r["ok"])

    def test_same_request_id_is_reserved_once(self, pg_session_factory, pg_user_id):
        results = _run_concurrently(6, lambda i: _with_session(
            pg_session_factory, lambda db: reserve(pg_user_id, "shared", 2, db)
        ))

        assert all(r["ok"] for r in results)
        db = pg_session_factory()
        try:
            balance = db.query(CreditBalance).filter(CreditBalance.user_id == pg_user_id).one()
            assert balance.reserved_monthly == 2
            assert db.query(CreditReservation).count() == 1
        finally:
            db.close()

    def test_racing_commit_and_release_settle_once(self, pg_session_factory, pg_user_id):
        _with_session(pg_session_factory, lambda db: reserve(pg_user_id, "req1", 3, db))

        operations = [
            lambda db: commit(pg_user_id, "req1", db),
            lambda db: release(pg_user_id, "req1", db),
        ]
        _run_concurrently(2, lambda i: _with_session(pg_session_factory, operations[i]))

        db = pg_session_factory()
        try:
            balance = db.query(CreditBalance).filter(CreditBalance.user_id == pg_user_id).one()
            reservation = db.query(CreditReservation).filter(CreditReservation.request_id == "req1").one()
            assert balance.reserved_monthly == 0
            if reservation.status == ReservationStatus.COMMITTED:
                assert balance.monthly_used == 3
            else:
                assert reservation.status == ReservationStatus.RELEASED
                assert balance.monthly_used == 0
        finally:
            db.close()
