"""Tests for the balance projection"""
import pytest

from credit_ledger.models.credit_balance import CreditBalance
from credit_ledger.models.credit_balance_projection import CreditBalanceProjection
from credit_ledger.services.balance_service import get_or_create_credit_balance
from credit_ledger.services.billing_service import grant_credits
from credit_ledger.services.projection_service import compute_available, get_balance_projection
from credit_ledger.services.reservation_service import commit, refund, release, reserve


def _projection(db_session, user_id):
    return db_session.query(CreditBalanceProjection).filter(
        CreditBalanceProjection.user_id == user_id
    ).first()


def _balance(db_session, user_id):
    return db_session.query(CreditBalance).filter(CreditBalance.user_id == user_id).first()


class TestComputeAvailable:
    def test_sums_both_pools(self):
        balance = CreditBalance(
            monthly_allowance=10, monthly_used=3, reserved_monthly=2,
            bonus_total=5, bonus_used=1, reserved_bonus=1,
        )
        assert compute_available(balance) == 8

    def test_clamps_at_zero(self):
        balance = CreditBalance(
            monthly_allowance=5, monthly_used=9, reserved_monthly=0,
            bonus_total=0, bonus_used=0, reserved_bonus=0,
        )
        assert compute_available(balance) == 0


@pytest.mark.critical
class TestProjectionSync:
    """Every mutating operation leaves the projection equal to the balance"""

    def test_projection_tracks_each_operation(self, test_user, funded_balance, db_session):
        steps = [
            lambda: reserve(test_user.id, "req1", 12, db_session),
            lambda: commit(test_user.id, "req1", db_session),
            lambda: reserve(test_user.id, "req2", 2, db_session),
            lambda: release(test_user.id, "req2", db_session),
            lambda: refund(test_user.id, "req1", db_session),
            lambda: grant_credits(test_user.id, 4, db_session, external_reference="cs_1"),
        ]
        expected = [3, 3, 1, 3, 15, 19]

        for step, available in zip(steps, expected):
            assert step()["ok"] is True
            projection = _projection(db_session, test_user.id)
            assert projection.available == available
            assert projection.available == compute_available(_balance(db_session, test_user.id))

    def test_rejected_operation_leaves_projection(self, test_user, funded_balance, db_session):
        reserve(test_user.id, "req1", 5, db_session)

        reserve(test_user.id, "req2", 50, db_session)

        assert _projection(db_session, test_user.id).available == 10

    def test_get_projection(self, test_user, db_session):
        assert get_balance_projection(test_user.id, db_session) is None

        get_or_create_credit_balance(test_user.id, db_session)
        projection = get_balance_projection(test_user.id, db_session)

        assert projection["available"] == 5
        assert projection["tier"] == "basic"
        assert projection["cycle_end"] is not None
