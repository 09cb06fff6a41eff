"""Transaction log - append-only ledger entries, lookups and the folded history view"""
from typing import Any, Dict, Iterable, List, Optional
import logging

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from credit_ledger.models.credit_balance import CreditBalance
from credit_ledger.models.credit_transaction import CreditTransaction, Pool, TransactionType
from credit_ledger.schemas.ledger_context import dump_context, parse_context
from credit_ledger.utils.cycle_window import as_utc

logger = logging.getLogger(__name__)

# Folded status of a request chain, keyed by its latest entry type
HISTORY_STATUS = {
    TransactionType.RESERVATION: 'reserved',
    TransactionType.USAGE: 'charged',
    TransactionType.RELEASE: 'released',
    TransactionType.REFUND: 'refunded',
}


def append_transaction(
    db: Session,
    balance: CreditBalance,
    transaction_type: str,
    amount: int,
    monthly_amount: int = 0,
    bonus_amount: int = 0,
    request_id: Optional[str] = None,
    settles: Optional[CreditTransaction] = None,
    external_reference: Optional[str] = None,
    description: Optional[str] = None,
    context: Optional[BaseModel] = None,
) -> CreditTransaction:
    """Append an entry carrying the post-operation available balances

    Must be called after the balance row has been mutated. Flushes so the new
    entry id can be referenced by a later settlement entry.
    """
    entry = CreditTransaction(
        user_id=balance.user_id,
        request_id=request_id,
        transaction_type=transaction_type,
        amount=amount,
        monthly_amount=monthly_amount,
        bonus_amount=bonus_amount,
        pool=Pool.for_split(monthly_amount, bonus_amount),
        balance_monthly_after=balance.available_monthly,
        balance_bonus_after=balance.available_bonus,
        settles_transaction_id=settles.id if settles is not None else None,
        external_reference=external_reference,
        description=description,
        context=dump_context(context),
    )
    db.add(entry)
    db.flush()
    return entry


def find_entry(db: Session, user_id: int, request_id: str, transaction_type: str) -> Optional[CreditTransaction]:
    """Latest entry of a type for a request"""
    return db.query(CreditTransaction).filter(
        CreditTransaction.user_id == user_id,
        CreditTransaction.request_id == request_id,
        CreditTransaction.transaction_type == transaction_type,
    ).order_by(CreditTransaction.id.desc()).first()


def find_legacy_usage(db: Session, user_id: int, request_id: str) -> List[CreditTransaction]:
    """Direct charges for a request that never went through a reservation"""
    return db.query(CreditTransaction).filter(
        CreditTransaction.user_id == user_id,
        CreditTransaction.request_id == request_id,
        CreditTransaction.transaction_type == TransactionType.USAGE,
        CreditTransaction.settles_transaction_id.is_(None),
        CreditTransaction.amount < 0,
    ).order_by(CreditTransaction.id.asc()).all()


def find_by_reference(
    db: Session,
    user_id: int,
    external_reference: str,
    transaction_types: Iterable[str],
) -> Optional[CreditTransaction]:
    return db.query(CreditTransaction).filter(
        CreditTransaction.user_id == user_id,
        CreditTransaction.external_reference == external_reference,
        CreditTransaction.transaction_type.in_(list(transaction_types)),
    ).first()


def _context_for_display(entry: CreditTransaction) -> Optional[Dict[str, Any]]:
    try:
        context = parse_context(entry.context)
    except ValidationError as e:
        logger.warning(f"Unreadable context on credit transaction {entry.id}: {e}")
        return None
    return context.model_dump(mode='json') if context is not None else None


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        'id': entry.id,
        'request_id': entry.request_id,
        'transaction_type': entry.transaction_type,
        'amount': entry.amount,
        'monthly_amount': entry.monthly_amount,
        'bonus_amount': entry.bonus_amount,
        'pool': entry.pool,
        'balance_monthly_after': entry.balance_monthly_after,
        'balance_bonus_after': entry.balance_bonus_after,
        'settles_transaction_id': entry.settles_transaction_id,
        'external_reference': entry.external_reference,
        'description': entry.description,
        'context': _context_for_display(entry),
        'created_at': as_utc(entry.created_at).isoformat(),
    }


def get_credit_transactions(user_id: int, db: Session, limit: int = 50) -> List[Dict[str, Any]]:
    """Raw ledger entries, newest first"""
    entries = db.query(CreditTransaction).filter(
        CreditTransaction.user_id == user_id
    ).order_by(
        CreditTransaction.created_at.desc(), CreditTransaction.id.desc()
    ).limit(limit).all()

    return [serialize_transaction(entry) for entry in entries]


def fold_transactions(entries: Iterable[CreditTransaction]) -> List[Dict[str, Any]]:
    """Collapse each request's reservation and settlement entries into one row

    The row amount is the net effect on available credits, so a hold that was
    later charged shows once, and a released or refunded request nets to zero.
    Entries without a request id pass through unchanged.
    """
    rows: List[Dict[str, Any]] = []
    by_request: Dict[str, Dict[str, Any]] = {}

    for entry in sorted(entries, key=lambda e: e.id):
        created_at = as_utc(entry.created_at).isoformat()

        if entry.request_id is None:
            rows.append({
                'request_id': None,
                'transaction_type': entry.transaction_type,
                'status': entry.transaction_type,
                'amount': entry.amount,
                'monthly_amount': entry.monthly_amount,
                'bonus_amount': entry.bonus_amount,
                'balance_monthly_after': entry.balance_monthly_after,
                'balance_bonus_after': entry.balance_bonus_after,
                'description': entry.description,
                'transaction_ids': [entry.id],
                'created_at': created_at,
                'updated_at': created_at,
                '_last_id': entry.id,
            })
            continue

        row = by_request.get(entry.request_id)
        if row is None:
            row = {
                'request_id': entry.request_id,
                'transaction_type': entry.transaction_type,
                'status': None,
                'amount': 0,
                'monthly_amount': entry.monthly_amount,
                'bonus_amount': entry.bonus_amount,
                'description': entry.description,
                'transaction_ids': [],
                'created_at': created_at,
            }
            by_request[entry.request_id] = row
            rows.append(row)

        row['amount'] += entry.amount
        row['status'] = HISTORY_STATUS.get(entry.transaction_type, entry.transaction_type)
        row['balance_monthly_after'] = entry.balance_monthly_after
        row['balance_bonus_after'] = entry.balance_bonus_after
        row['transaction_ids'].append(entry.id)
        row['updated_at'] = created_at
        row['_last_id'] = entry.id

    rows.sort(key=lambda r: r['_last_id'], reverse=True)
    for row in rows:
        del row['_last_id']
    return rows


def get_credit_history(user_id: int, db: Session, limit: int = 50) -> List[Dict[str, Any]]:
    """User-facing history with one row per request"""
    recent = db.query(CreditTransaction).filter(
        CreditTransaction.user_id == user_id
    ).order_by(CreditTransaction.id.desc()).limit(limit * 3).all()

    # Pull in the rest of each chain that started before the window
    request_ids = {entry.request_id for entry in recent if entry.request_id}
    seen = {entry.id for entry in recent}
    entries = list(recent)
    if request_ids:
        for entry in db.query(CreditTransaction).filter(
            CreditTransaction.user_id == user_id,
            CreditTransaction.request_id.in_(request_ids),
        ).all():
            if entry.id not in seen:
                entries.append(entry)

    return fold_transactions(entries)[:limit]
