"""Cycle manager - advances the allocation window and resets monthly usage"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credit_ledger.core.config import TIERS, credits_per_cycle_for_tier
from credit_ledger.core.logging import ledger_logger
from credit_ledger.core.metrics import record_operation
from credit_ledger.models.credit_balance import CreditBalance, CycleSource
from credit_ledger.models.credit_transaction import TransactionType
from credit_ledger.models.user import User
from credit_ledger.schemas.ledger_context import CycleGrantContext
from credit_ledger.services.balance_service import balance_snapshot, lock_balance
from credit_ledger.services.projection_service import sync_balance_projection
from credit_ledger.services.transaction_log import append_transaction
from credit_ledger.utils.cycle_window import advance_rolling_window, as_utc, is_cycle_due, window_containing

logger = logging.getLogger(__name__)


def _reset_if_due_locked(balance: CreditBalance, db: Session, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Advance the window of an already-locked balance if it has ended

    Zeroes monthly usage and recomputes the allowance from the current tier.
    Bonus pools and reserved amounts are left alone; the allowance never drops
    below what is still reserved from the monthly pool. Does not commit.

    Returns:
        Details of the new window, or None when no reset was due
    """
    now = now or datetime.now(timezone.utc)
    if not is_cycle_due(balance.cycle_end, now):
        return None

    previous_end = as_utc(balance.cycle_end)
    if balance.cycle_source == CycleSource.PROFILE:
        user = db.query(User).filter(User.id == balance.user_id).first()
        anchor = as_utc(user.created_at) if user else previous_end
        cycle_start, cycle_end = window_containing(anchor, now)
    else:
        if balance.cycle_anchor is None:
            balance.cycle_anchor = previous_end
        cycle_start, cycle_end = advance_rolling_window(as_utc(balance.cycle_anchor), now)

    expired_monthly = balance.available_monthly
    allowance = credits_per_cycle_for_tier(balance.tier)

    balance.monthly_allowance = max(allowance, balance.reserved_monthly)
    balance.monthly_used = 0
    balance.cycle_start = cycle_start
    balance.cycle_end = cycle_end
    balance.last_reset_at = now
    balance.updated_at = now

    sync_balance_projection(balance, db)
    append_transaction(
        db, balance, TransactionType.SUBSCRIPTION_GRANT,
        amount=balance.monthly_allowance,
        monthly_amount=balance.monthly_allowance,
        description=f"Monthly {balance.tier} allowance",
        context=CycleGrantContext(
            tier=balance.tier,
            source=balance.cycle_source,
            cycle_start=cycle_start,
            cycle_end=cycle_end,
            expired_monthly=expired_monthly,
        ),
    )

    ledger_logger.info(
        f"Cycle reset for user {balance.user_id}: {balance.monthly_allowance} monthly credits "
        f"({balance.tier}, {balance.cycle_source}), window {cycle_start.isoformat()} -> {cycle_end.isoformat()}, "
        f"{expired_monthly} unused credits expired"
    )
    return {
        'cycle_start': cycle_start.isoformat(),
        'cycle_end': cycle_end.isoformat(),
        'monthly_allowance': balance.monthly_allowance,
        'expired_monthly': expired_monthly,
    }


def reset_if_due(user_id: int, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Reset the user's monthly usage if the current window has ended"""
    if not user_id:
        return {'ok': False, 'reason': 'missing_user_id'}

    try:
        balance = lock_balance(user_id, db)
        if balance is None:
            result = {'ok': False, 'reason': 'missing_credit_account'}
            record_operation('reset_if_due', result)
            return result

        reset = _reset_if_due_locked(balance, db, now)
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error resetting credit cycle for user {user_id}: {e}", exc_info=True)
        db.rollback()
        raise

    result = {
        'ok': True,
        'reset': reset is not None,
        'tier': balance.tier,
        'cycle_start': as_utc(balance.cycle_start).isoformat(),
        'cycle_end': as_utc(balance.cycle_end).isoformat(),
        **balance_snapshot(balance),
    }
    if reset is None:
        result['noop'] = True
    else:
        result['expired_monthly'] = reset['expired_monthly']
    record_operation('reset_if_due', result)
    return result


def change_tier(user_id: int, tier: str, db: Session) -> Dict[str, Any]:
    """Record a new tier; its allowance applies from the next window boundary"""
    if tier not in TIERS:
        return {'ok': False, 'reason': 'invalid_tier'}

    try:
        balance = lock_balance(user_id, db)
        if balance is None:
            return {'ok': False, 'reason': 'missing_credit_account'}

        previous_tier = balance.tier
        balance.tier = tier
        sync_balance_projection(balance, db)
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error changing tier for user {user_id}: {e}", exc_info=True)
        db.rollback()
        raise

    if previous_tier != tier:
        ledger_logger.info(
            f"Tier changed for user {user_id}: {previous_tier} -> {tier} "
            f"(allowance {credits_per_cycle_for_tier(tier)} from {as_utc(balance.cycle_end).isoformat()})"
        )
    return {
        'ok': True,
        'tier': tier,
        'previous_tier': previous_tier,
        'cycle_end': as_utc(balance.cycle_end).isoformat(),
        **balance_snapshot(balance),
    }
