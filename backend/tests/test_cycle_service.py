"""Tests for allocation windows and monthly resets"""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import assert_pool_invariants
from credit_ledger.models.credit_balance import CreditBalance, CycleSource
from credit_ledger.models.credit_balance_projection import CreditBalanceProjection
from credit_ledger.models.credit_transaction import CreditTransaction, TransactionType
from credit_ledger.schemas.ledger_context import CycleGrantContext, parse_context
from credit_ledger.services.balance_service import get_or_create_credit_balance
from credit_ledger.services.billing_service import apply_subscription_state
from credit_ledger.services.cycle_service import change_tier, reset_if_due
from credit_ledger.services.reservation_service import commit, reserve
from credit_ledger.utils.cycle_window import (
    add_months, advance_rolling_window, as_utc, is_anchored_on, is_cycle_due, window_containing
)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _grants(db_session, user_id):
    return db_session.query(CreditTransaction).filter(
        CreditTransaction.user_id == user_id,
        CreditTransaction.transaction_type == TransactionType.SUBSCRIPTION_GRANT,
    ).order_by(CreditTransaction.id).all()


class TestWindowArithmetic:
    """Test month arithmetic"""

    def test_add_months_clamps_to_month_end(self):
        assert add_months(_utc(2026, 1, 31), 1) == _utc(2026, 2, 28)
        assert add_months(_utc(2028, 1, 31), 1) == _utc(2028, 2, 29)
        assert add_months(_utc(2026, 11, 15), 3) == _utc(2027, 2, 15)

    def test_anchor_on_31st_does_not_drift(self):
        anchor = _utc(2026, 1, 31)
        assert add_months(anchor, 3) == _utc(2026, 4, 30)
        assert add_months(anchor, 2) == _utc(2026, 3, 31)

    def test_window_containing_now(self):
        anchor = _utc(2026, 1, 31, 12)
        start, end = window_containing(anchor, _utc(2026, 3, 15))
        assert (start, end) == (_utc(2026, 2, 28, 12), _utc(2026, 3, 31, 12))

    def test_window_boundary_is_half_open(self):
        anchor = _utc(2026, 1, 10)
        start, end = window_containing(anchor, _utc(2026, 2, 10))
        assert (start, end) == (_utc(2026, 2, 10), _utc(2026, 3, 10))

    def test_now_before_anchor_yields_first_window(self):
        anchor = _utc(2026, 5, 1)
        assert window_containing(anchor, _utc(2026, 4, 1)) == (anchor, _utc(2026, 6, 1))

    def test_rolling_window_counts_from_billing_anchor(self):
        anchor = _utc(2026, 1, 31)
        assert advance_rolling_window(anchor, _utc(2026, 3, 1)) == (_utc(2026, 2, 28), _utc(2026, 3, 31))
        assert advance_rolling_window(anchor, _utc(2026, 4, 15)) == (_utc(2026, 3, 31), _utc(2026, 4, 30))

    def test_is_anchored_on(self):
        anchor = _utc(2026, 1, 31)
        assert is_anchored_on(anchor, _utc(2026, 2, 28)) is True
        assert is_anchored_on(anchor, _utc(2026, 3, 31)) is True
        assert is_anchored_on(anchor, _utc(2026, 3, 28)) is False
        assert is_anchored_on(None, anchor) is False

    def test_as_utc_attaches_tz_to_naive_values(self):
        assert as_utc(datetime(2026, 1, 1)) == _utc(2026, 1, 1)
        assert as_utc(None) is None

    def test_is_cycle_due(self):
        now = _utc(2026, 3, 1)
        assert is_cycle_due(_utc(2026, 3, 1), now) is True
        assert is_cycle_due(_utc(2026, 3, 2), now) is False
        assert is_cycle_due(None, now) is True


@pytest.mark.critical
class TestResetIfDue:
    """Test the cycle manager"""

    def test_not_due_is_a_noop(self, test_user, funded_balance, db_session):
        result = reset_if_due(test_user.id, db_session)

        assert result["ok"] is True
        assert result["reset"] is False
        assert result["noop"] is True
        assert _grants(db_session, test_user.id) == []

    def test_due_subscription_window_rolls_forward(self, test_user, make_balance, db_session):
        now = datetime.now(timezone.utc)
        cycle_end = now - timedelta(hours=2)
        balance = make_balance(
            test_user, monthly_allowance=5, bonus_total=3,
            cycle_start=add_months(cycle_end, -1), cycle_end=cycle_end,
            monthly_used=4, bonus_used=1,
        )

        result = reset_if_due(test_user.id, db_session, now=now)

        assert result["reset"] is True
        assert result["monthly_used"] == 0
        assert result["monthly_allowance"] == 5
        assert result["expired_monthly"] == 1
        # Bonus pool survives the reset
        assert result["bonus_used"] == 1
        assert result["remaining_bonus"] == 2

        db_session.refresh(balance)
        assert as_utc(balance.cycle_start) == cycle_end
        assert as_utc(balance.cycle_end) == add_months(cycle_end, 1)
        assert as_utc(balance.cycle_start) <= now < as_utc(balance.cycle_end)

        grant = _grants(db_session, test_user.id)[-1]
        assert grant.amount == 5
        context = parse_context(grant.context)
        assert isinstance(context, CycleGrantContext)
        assert context.expired_monthly == 1

    def test_missed_windows_jump_to_current(self, test_user, make_balance, db_session):
        """Several skipped months produce one reset into the window containing now"""
        now = datetime.now(timezone.utc)
        cycle_end = add_months(now, -3) - timedelta(days=1)
        make_balance(test_user, cycle_start=add_months(cycle_end, -1), cycle_end=cycle_end)

        reset_if_due(test_user.id, db_session, now=now)

        balance = db_session.query(CreditBalance).filter(CreditBalance.user_id == test_user.id).first()
        assert as_utc(balance.cycle_start) <= now < as_utc(balance.cycle_end)
        assert len(_grants(db_session, test_user.id)) == 1

    def test_profile_window_is_anchored_on_signup(self, test_user_2, make_balance, db_session):
        now = datetime.now(timezone.utc)
        make_balance(
            test_user_2, cycle_source=CycleSource.PROFILE,
            cycle_start=now - timedelta(days=40), cycle_end=now - timedelta(days=10),
        )

        reset_if_due(test_user_2.id, db_session, now=now)

        balance = db_session.query(CreditBalance).filter(CreditBalance.user_id == test_user_2.id).first()
        expected = window_containing(as_utc(test_user_2.created_at), now)
        assert (as_utc(balance.cycle_start), as_utc(balance.cycle_end)) == expected

    def test_reserved_holds_carry_across_reset(self, test_user, make_balance, db_session):
        """The allowance never drops below what is still held from the monthly pool"""
        balance = make_balance(test_user, monthly_allowance=10, bonus_total=0)
        reserve(test_user.id, "in-flight", 8, db_session)
        balance.cycle_end = datetime.now(timezone.utc) - timedelta(minutes=1)
        db_session.commit()

        result = reset_if_due(test_user.id, db_session)

        assert result["reset"] is True
        assert result["reserved_monthly"] == 8
        assert result["monthly_allowance"] == 8
        assert result["remaining_monthly"] == 0

        committed = commit(test_user.id, "in-flight", db_session)
        assert committed["ok"] is True
        assert committed["monthly_used"] == 8
        db_session.refresh(balance)
        assert_pool_invariants(balance)

    def test_reserve_triggers_due_reset(self, test_user, make_balance, db_session):
        now = datetime.now(timezone.utc)
        make_balance(
            test_user, monthly_allowance=10, bonus_total=0, monthly_used=10,
            cycle_start=now - timedelta(days=31), cycle_end=now - timedelta(days=1),
        )

        result = reserve(test_user.id, "after-reset", 3, db_session)

        assert result["ok"] is True
        assert result["monthly_allowance"] == 5
        assert result["remaining_monthly"] == 2

    def test_month_end_subscription_does_not_drift(self, test_user, make_balance, db_session):
        """A billing anchor on the 31st returns to the 31st after a short month"""
        make_balance(test_user)
        apply_subscription_state(
            test_user.id, "starter", _utc(2026, 1, 31), _utc(2026, 2, 28), db_session,
            invoice_id="in_jan", reset_usage=True,
        )

        reset_if_due(test_user.id, db_session, now=_utc(2026, 3, 1))
        result = reset_if_due(test_user.id, db_session, now=_utc(2026, 4, 1))

        assert result["reset"] is True
        assert result["cycle_start"] == _utc(2026, 3, 31).isoformat()
        assert result["cycle_end"] == _utc(2026, 4, 30).isoformat()

    def test_renewal_on_a_short_month_keeps_the_anchor(self, test_user, make_balance, db_session):
        balance = make_balance(test_user)
        apply_subscription_state(test_user.id, "starter", _utc(2026, 1, 31), _utc(2026, 2, 28), db_session)
        apply_subscription_state(test_user.id, "starter", _utc(2026, 2, 28), _utc(2026, 3, 31), db_session)

        db_session.refresh(balance)
        assert as_utc(balance.cycle_anchor) == _utc(2026, 1, 31)

        reset_if_due(test_user.id, db_session, now=_utc(2026, 4, 2))
        db_session.refresh(balance)
        assert as_utc(balance.cycle_end) == _utc(2026, 4, 30)

    def test_reset_unknown_user(self, db_session):
        assert reset_if_due(9999, db_session)["reason"] == "missing_credit_account"

    def test_reset_projection_follows_the_balance(self, test_user, make_balance, db_session):
        now = datetime.now(timezone.utc)
        make_balance(
            test_user, monthly_allowance=5, bonus_total=2, monthly_used=5,
            cycle_start=now - timedelta(days=31), cycle_end=now - timedelta(days=1),
        )

        reset_if_due(test_user.id, db_session)

        projection = db_session.query(CreditBalanceProjection).filter(
            CreditBalanceProjection.user_id == test_user.id
        ).first()
        assert projection.available == 7


@pytest.mark.critical
class TestTierChange:
    """Test tier changes taking effect at the window boundary"""

    def test_new_allowance_waits_for_boundary(self, test_user, make_balance, db_session):
        balance = make_balance(test_user, monthly_allowance=5, bonus_total=0)

        changed = change_tier(test_user.id, "creator", db_session)

        assert changed["ok"] is True
        assert changed["previous_tier"] == "basic"
        assert changed["monthly_allowance"] == 5

        boundary = as_utc(balance.cycle_end)
        result = reset_if_due(test_user.id, db_session, now=boundary + timedelta(seconds=1))

        assert result["reset"] is True
        assert result["tier"] == "creator"
        assert result["monthly_allowance"] == 200

    def test_invalid_tier(self, test_user, funded_balance, db_session):
        assert change_tier(test_user.id, "platinum", db_session)["reason"] == "invalid_tier"


@pytest.mark.critical
class TestBalanceCreation:
    """Test lazy creation of balances"""

    def test_new_balance_gets_basic_allowance_and_grant(self, test_user, db_session):
        balance = get_or_create_credit_balance(test_user.id, db_session)

        assert balance.tier == "basic"
        assert balance.monthly_allowance == 5
        assert balance.cycle_source == CycleSource.PROFILE
        assert as_utc(balance.cycle_start) == as_utc(test_user.created_at)

        grants = _grants(db_session, test_user.id)
        assert len(grants) == 1
        assert grants[0].amount == 5

        projection = db_session.query(CreditBalanceProjection).filter(
            CreditBalanceProjection.user_id == test_user.id
        ).first()
        assert projection.available == 5

    def test_second_call_returns_same_row(self, test_user, db_session):
        first = get_or_create_credit_balance(test_user.id, db_session)
        second = get_or_create_credit_balance(test_user.id, db_session)

        assert first.id == second.id
        assert len(_grants(db_session, test_user.id)) == 1

    def test_unknown_user_has_no_balance(self, db_session):
        assert get_or_create_credit_balance(9999, db_session) is None
