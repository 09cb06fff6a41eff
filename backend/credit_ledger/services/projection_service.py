"""Balance projection - the read-optimized available balance consumed by the UI"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from sqlalchemy.orm import Session

from credit_ledger.models.credit_balance import CreditBalance
from credit_ledger.models.credit_balance_projection import CreditBalanceProjection
from credit_ledger.utils.cycle_window import as_utc

logger = logging.getLogger(__name__)


def compute_available(balance: CreditBalance) -> int:
    """Pure function of the balance row, clamped to zero"""
    monthly = balance.monthly_allowance - balance.monthly_used - balance.reserved_monthly
    bonus = balance.bonus_total - balance.bonus_used - balance.reserved_bonus
    return max(0, monthly + bonus)


def sync_balance_projection(balance: CreditBalance, db: Session) -> CreditBalanceProjection:
    """Recompute the projection inside the caller's transaction

    The only writer of credit_balance_projections. Does not commit.
    """
    projection = db.query(CreditBalanceProjection).filter(
        CreditBalanceProjection.user_id == balance.user_id
    ).first()

    if projection is None:
        projection = CreditBalanceProjection(user_id=balance.user_id)
        db.add(projection)

    projection.available = compute_available(balance)
    projection.tier = balance.tier
    projection.cycle_end = balance.cycle_end
    projection.updated_at = datetime.now(timezone.utc)
    return projection


def get_balance_projection(user_id: int, db: Session) -> Optional[Dict[str, Any]]:
    """Read the projection for a user (None when no balance exists yet)"""
    projection = db.query(CreditBalanceProjection).filter(
        CreditBalanceProjection.user_id == user_id
    ).first()

    if projection is None:
        return None

    cycle_end = as_utc(projection.cycle_end)
    return {
        'user_id': projection.user_id,
        'available': projection.available,
        'tier': projection.tier,
        'cycle_end': cycle_end.isoformat() if cycle_end else None,
        'updated_at': as_utc(projection.updated_at).isoformat() if projection.updated_at else None,
    }
