"""Credit API routes for the UI: projection reads, history and self-service sync"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from credit_ledger.core.config import settings
from credit_ledger.core.security import require_auth
from credit_ledger.db.session import get_db
from credit_ledger.services.balance_service import get_or_create_credit_balance
from credit_ledger.services.compensation_service import scan
from credit_ledger.services.projection_service import get_balance_projection
from credit_ledger.services.transaction_log import get_credit_history, get_credit_transactions

router = APIRouter(prefix="/api/credits", tags=["credits"])

# Self-service sync covers the last week
SYNC_LOOKBACK_MINUTES = 7 * 24 * 60


def _projection_or_404(user_id: int, db: Session):
    projection = get_balance_projection(user_id, db)
    if projection is None:
        # First visit: the ledger creates the balance and its projection
        if get_or_create_credit_balance(user_id, db) is None:
            raise HTTPException(404, "User not found")
        projection = get_balance_projection(user_id, db)
    return projection


@router.get("/balance")
def get_balance(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Get the available credit balance"""
    return _projection_or_404(user_id, db)


@router.post("/sync")
def sync_credits(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Settle the user's failed or abandoned generations now, then return the fresh balance"""
    rows = scan(
        db,
        user_id=user_id,
        lookback_minutes=SYNC_LOOKBACK_MINUTES,
        dry_run=settings.COMPENSATION_DRY_RUN,
        limit=settings.COMPENSATION_BATCH_SIZE
    )
    return {
        "ok": True,
        "compensated": [{"request_id": row["request_id"], "action": row["action_taken"]} for row in rows],
        "balance": _projection_or_404(user_id, db),
    }


@router.get("/transactions")
def get_transactions(
    limit: int = 50,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Get raw credit ledger entries"""
    return {"transactions": get_credit_transactions(user_id, db, limit=min(max(limit, 1), 200))}


@router.get("/history")
def get_history(
    limit: int = 50,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Get credit history with one row per request"""
    return {"history": get_credit_history(user_id, db, limit=min(max(limit, 1), 200))}
