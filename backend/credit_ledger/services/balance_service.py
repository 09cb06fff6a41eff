"""Balance store - lazy creation, row locking and balance snapshots"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credit_ledger.core.config import TIER_BASIC, credits_per_cycle_for_tier
from credit_ledger.models.credit_balance import CreditBalance, CycleSource
from credit_ledger.models.credit_transaction import TransactionType
from credit_ledger.models.user import User
from credit_ledger.schemas.ledger_context import CycleGrantContext
from credit_ledger.services.projection_service import sync_balance_projection
from credit_ledger.services.transaction_log import append_transaction
from credit_ledger.utils.cycle_window import as_utc, compute_profile_cycle_window

logger = logging.getLogger(__name__)


def get_or_create_credit_balance(user_id: int, db: Session) -> Optional[CreditBalance]:
    """Get or create the credit balance for a user

    New balances start on the basic tier with a profile-anchored window and
    an initial monthly grant. Returns None when the user does not exist.
    Concurrent creators race on the unique user_id; the loser re-reads.
    """
    balance = db.query(CreditBalance).filter(CreditBalance.user_id == user_id).first()
    if balance:
        return balance

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        logger.warning(f"No user {user_id} - cannot create credit balance")
        return None

    now = datetime.now(timezone.utc)
    cycle_start, cycle_end = compute_profile_cycle_window(as_utc(user.created_at), now)
    allowance = credits_per_cycle_for_tier(TIER_BASIC)

    balance = CreditBalance(
        user_id=user_id,
        tier=TIER_BASIC,
        monthly_allowance=allowance,
        monthly_used=0,
        reserved_monthly=0,
        bonus_total=0,
        bonus_used=0,
        reserved_bonus=0,
        cycle_start=cycle_start,
        cycle_end=cycle_end,
        cycle_source=CycleSource.PROFILE,
        last_reset_at=now,
    )
    db.add(balance)

    try:
        db.flush()
        append_transaction(
            db, balance, TransactionType.SUBSCRIPTION_GRANT,
            amount=allowance,
            monthly_amount=allowance,
            description=f"Initial {TIER_BASIC} allowance",
            context=CycleGrantContext(
                tier=TIER_BASIC,
                source=CycleSource.PROFILE,
                cycle_start=cycle_start,
                cycle_end=cycle_end,
            ),
        )
        sync_balance_projection(balance, db)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Credit balance for user {user_id} created concurrently, re-reading")
        return db.query(CreditBalance).filter(CreditBalance.user_id == user_id).first()

    db.refresh(balance)
    logger.info(f"Created credit balance for user {user_id}: {allowance} credits, cycle ends {cycle_end.isoformat()}")
    return balance


def lock_balance(user_id: int, db: Session) -> Optional[CreditBalance]:
    """Take the per-user row lock (SELECT ... FOR UPDATE), creating the row first if needed

    Every ledger operation locks the balance before touching any reservation row.
    """
    balance = db.query(CreditBalance).filter(
        CreditBalance.user_id == user_id
    ).with_for_update().populate_existing().first()

    if balance is None:
        if get_or_create_credit_balance(user_id, db) is None:
            return None
        balance = db.query(CreditBalance).filter(
            CreditBalance.user_id == user_id
        ).with_for_update().populate_existing().first()

    return balance


def balance_snapshot(balance: CreditBalance) -> Dict[str, Any]:
    """Remaining and held amounts per pool"""
    return {
        'remaining_monthly': balance.available_monthly,
        'remaining_bonus': balance.available_bonus,
        'reserved_monthly': balance.reserved_monthly,
        'reserved_bonus': balance.reserved_bonus,
        'monthly_used': balance.monthly_used,
        'bonus_used': balance.bonus_used,
        'monthly_allowance': balance.monthly_allowance,
        'bonus_total': balance.bonus_total,
    }


def get_credit_balance(user_id: int, db: Session) -> Optional[Dict[str, Any]]:
    """Full balance detail for internal callers (the UI reads the projection instead)"""
    balance = get_or_create_credit_balance(user_id, db)
    if balance is None:
        return None

    return {
        'user_id': user_id,
        'tier': balance.tier,
        'cycle_start': as_utc(balance.cycle_start).isoformat(),
        'cycle_end': as_utc(balance.cycle_end).isoformat(),
        'cycle_source': balance.cycle_source,
        **balance_snapshot(balance),
    }
