"""Database integrity, model helper and configuration tests"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import IntegrityError

from credit_ledger.core.config import credits_per_cycle_for_tier, is_unmetered_tier, settings
from credit_ledger.core.metrics import ledger_operations_counter, open_reservations_gauge, record_operation
from credit_ledger.models import Base
from credit_ledger.models.credit_balance import CreditBalance
from credit_ledger.models.credit_reservation import CreditReservation
from credit_ledger.models.credit_transaction import Pool


@pytest.mark.medium
class TestModelConstraints:
    """Test the pool invariants enforced by the store"""

    def test_bonus_pool_cannot_be_overdrawn(self, test_user, db_session):
        now = datetime.now(timezone.utc)
        db_session.add(CreditBalance(
            user_id=test_user.id, monthly_allowance=5, bonus_total=2, bonus_used=2, reserved_bonus=1,
            cycle_start=now, cycle_end=now + timedelta(days=30),
        ))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_negative_usage_is_rejected(self, test_user, funded_balance, db_session):
        funded_balance.monthly_used = -1
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_reservation_split_must_add_up(self, test_user, db_session):
        db_session.add(CreditReservation(
            request_id="req1", user_id=test_user.id, amount=5, monthly_amount=2, bonus_amount=2,
        ))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_request_id_is_unique(self, test_user, db_session):
        for _ in range(2):
            db_session.add(CreditReservation(
                request_id="req1", user_id=test_user.id, amount=1, monthly_amount=1, bonus_amount=0,
            ))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_user_relationships(self, test_user, funded_balance, db_session):
        db_session.refresh(test_user)
        assert test_user.credit_balance.id == funded_balance.id


@pytest.mark.medium
class TestModelHelpers:
    def test_pool_for_split(self):
        assert Pool.for_split(3, 0) == "monthly"
        assert Pool.for_split(0, 3) == "bonus"
        assert Pool.for_split(1, 2) == "mixed"
        assert Pool.for_split(0, 0) is None

    def test_available_is_clamped(self):
        balance = CreditBalance(
            monthly_allowance=5, monthly_used=6, reserved_monthly=0,
            bonus_total=4, bonus_used=1, reserved_bonus=1,
        )
        assert balance.available_monthly == 0
        assert balance.available_bonus == 2


@pytest.mark.medium
class TestTierConfig:
    def test_allowance_per_tier(self):
        assert credits_per_cycle_for_tier("basic") == 5
        assert credits_per_cycle_for_tier("creator") == 200
        assert credits_per_cycle_for_tier(None) == 5
        assert credits_per_cycle_for_tier("unknown") == 5

    def test_professional_is_metered_by_default(self):
        with patch.object(settings, "PROFESSIONAL_UNMETERED", False):
            assert is_unmetered_tier("professional") is False
        with patch.object(settings, "PROFESSIONAL_UNMETERED", True):
            assert is_unmetered_tier("professional") is True
            assert is_unmetered_tier("creator") is False


@pytest.mark.medium
class TestOperationMetrics:
    def _value(self, operation, outcome):
        return REGISTRY.get_sample_value(
            "ledger_operations_total", {"operation": operation, "outcome": outcome}
        ) or 0.0

    @pytest.mark.parametrize("result,outcome", [
        ({"ok": True}, "applied"),
        ({"ok": True, "idempotent": True}, "idempotent"),
        ({"ok": True, "already_released": True}, "idempotent"),
        ({"ok": True, "noop": True, "reason": "no_usage_to_refund"}, "noop"),
        ({"ok": False, "reason": "insufficient_credits"}, "insufficient_credits"),
    ])
    def test_outcome_labels(self, result, outcome):
        before = self._value("metrics_test", outcome)
        record_operation("metrics_test", result)
        assert self._value("metrics_test", outcome) == before + 1

    def test_collectors_live_in_default_registry(self):
        open_reservations_gauge.set(3)
        assert REGISTRY.get_sample_value("ledger_open_reservations") == 3
        assert ledger_operations_counter.describe()[0].name == "ledger_operations"


@pytest.mark.medium
class TestMetadata:
    def test_package_exports_base_with_every_table(self):
        assert set(Base.metadata.tables) >= {
            "users", "credit_balances", "credit_reservations", "credit_transactions",
            "credit_balance_projections", "generation_attempts", "credit_monitoring_events",
        }
