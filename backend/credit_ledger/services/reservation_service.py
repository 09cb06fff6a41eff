"""Reservation manager - admission control and settlement of billable requests

State machine:
    reserved --commit--> committed --refund--> released
    reserved --release-------------------------> released
    committed --release (delegates to refund)--> released
    released --(any op)--> idempotent no-op

Every operation locks the user's balance row, then the reservation row, and
commits once. Domain outcomes are returned as dicts with ``ok`` and, on
failure, ``reason``; only store failures raise.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from credit_ledger.core.config import is_unmetered_tier
from credit_ledger.core.logging import ledger_logger
from credit_ledger.core.metrics import record_operation
from credit_ledger.core.otel import traced_operation
from credit_ledger.models.credit_balance import CreditBalance
from credit_ledger.models.credit_reservation import CreditReservation, ReservationStatus
from credit_ledger.models.credit_transaction import TransactionType
from credit_ledger.schemas.ledger_context import (
    LegacyUsageContext, ReservationContext, SettlementContext, clean_attributes, dump_context
)
from credit_ledger.services.balance_service import balance_snapshot, lock_balance
from credit_ledger.services.cycle_service import _reset_if_due_locked
from credit_ledger.services.projection_service import sync_balance_projection
from credit_ledger.services.transaction_log import append_transaction, find_entry, find_legacy_usage

logger = logging.getLogger(__name__)


def _check_identity(user_id: Optional[int], request_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return 'missing_user_id'
    if request_id is None or not str(request_id).strip():
        return 'missing_request_id'
    return None


def _check_amount(amount: Any) -> bool:
    return isinstance(amount, int) and not isinstance(amount, bool) and amount > 0


def _rejected(operation: str, reason: str, user_id: Optional[int], request_id: Optional[str], **extra) -> Dict[str, Any]:
    result = {'ok': False, 'reason': reason, 'request_id': request_id, **extra}
    ledger_logger.warning(f"{operation} rejected for user {user_id}, request {request_id}: {reason}")
    record_operation(operation, result)
    return result


def _split_result(reservation: CreditReservation) -> Dict[str, Any]:
    return {
        'request_id': reservation.request_id,
        'status': reservation.status,
        'amount': reservation.amount,
        'monthly_amount': reservation.monthly_amount,
        'bonus_amount': reservation.bonus_amount,
    }


def _lock_reservation(db: Session, user_id: int, request_id: str) -> Optional[CreditReservation]:
    """Lock the reservation row; only called with the balance row already locked"""
    return db.query(CreditReservation).filter(
        CreditReservation.request_id == request_id,
        CreditReservation.user_id == user_id,
    ).with_for_update().populate_existing().first()


def _settlement_context(reason: Optional[str], source: str, metadata: Optional[Mapping[str, Any]],
                        failure_reason: Optional[str] = None) -> SettlementContext:
    return SettlementContext(
        reason=reason,
        failure_reason=failure_reason,
        source=source,
        attributes=clean_attributes(metadata),
    )


def _admit(balance: CreditBalance, amount: int):
    """Split an amount across pools, monthly first (None when it does not fit)"""
    if is_unmetered_tier(balance.tier):
        return amount, 0

    available_monthly = balance.available_monthly
    available_bonus = balance.available_bonus
    if available_monthly + available_bonus < amount:
        return None

    monthly_part = min(amount, available_monthly)
    return monthly_part, amount - monthly_part


@traced_operation("reserve")
def reserve(
    user_id: int,
    request_id: str,
    amount: int,
    db: Session,
    feature: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Place a provisional hold for a billable request

    Replaying a request id returns the original reservation's split and the
    current balances without mutating anything.
    """
    reason = _check_identity(user_id, request_id)
    if reason is None and not _check_amount(amount):
        reason = 'invalid_amount'
    if reason:
        return _rejected('reserve', reason, user_id, request_id)

    try:
        balance = lock_balance(user_id, db)
        if balance is None:
            return _rejected('reserve', 'missing_credit_account', user_id, request_id)

        existing = db.query(CreditReservation).filter(
            CreditReservation.request_id == request_id
        ).with_for_update().populate_existing().first()
        if existing is not None:
            if existing.user_id != user_id:
                db.rollback()
                return _rejected('reserve', 'request_id_conflict', user_id, request_id)
            result = {'ok': True, 'idempotent': True, **_split_result(existing), **balance_snapshot(balance)}
            db.commit()
            record_operation('reserve', result)
            return result

        _reset_if_due_locked(balance, db)

        split = _admit(balance, amount)
        if split is None:
            snapshot = balance_snapshot(balance)
            # Persist a cycle reset that may have happened above
            db.commit()
            return _rejected(
                'reserve', 'insufficient_credits', user_id, request_id,
                requested=amount,
                available=snapshot['remaining_monthly'] + snapshot['remaining_bonus'],
                **snapshot
            )

        monthly_part, bonus_part = split
        balance.reserved_monthly += monthly_part
        balance.reserved_bonus += bonus_part
        balance.updated_at = datetime.now(timezone.utc)

        context = ReservationContext(feature=feature, attributes=clean_attributes(metadata))
        reservation = CreditReservation(
            request_id=request_id,
            user_id=user_id,
            amount=amount,
            monthly_amount=monthly_part,
            bonus_amount=bonus_part,
            status=ReservationStatus.RESERVED,
            feature=feature,
            context=dump_context(context),
        )
        db.add(reservation)

        sync_balance_projection(balance, db)
        append_transaction(
            db, balance, TransactionType.RESERVATION,
            amount=-amount,
            monthly_amount=monthly_part,
            bonus_amount=bonus_part,
            request_id=request_id,
            description=f"Reserved for {feature}" if feature else "Reserved",
            context=context,
        )
        db.commit()
    except IntegrityError:
        # Same request id reserved concurrently for another user's balance lock
        db.rollback()
        existing = db.query(CreditReservation).filter(CreditReservation.request_id == request_id).first()
        if existing is None:
            raise
        if existing.user_id != user_id:
            return _rejected('reserve', 'request_id_conflict', user_id, request_id)
        balance = lock_balance(user_id, db)
        result = {'ok': True, 'idempotent': True, **_split_result(existing), **balance_snapshot(balance)}
        db.commit()
        record_operation('reserve', result)
        return result
    except SQLAlchemyError as e:
        logger.error(f"Error reserving {amount} credits for user {user_id}, request {request_id}: {e}", exc_info=True)
        db.rollback()
        raise

    result = {'ok': True, **_split_result(reservation), **balance_snapshot(balance)}
    ledger_logger.info(
        f"Reserved {amount} credits for user {user_id}, request {request_id} "
        f"({monthly_part} monthly, {bonus_part} bonus); "
        f"remaining {result['remaining_monthly']}/{result['remaining_bonus']}"
    )
    record_operation('reserve', result)
    return result


@traced_operation("commit")
def commit(
    user_id: int,
    request_id: str,
    db: Session,
    metadata: Optional[Mapping[str, Any]] = None,
    source: str = 'caller',
) -> Dict[str, Any]:
    """Settle a reservation into permanent usage after the billable job succeeded"""
    reason = _check_identity(user_id, request_id)
    if reason:
        return _rejected('commit', reason, user_id, request_id)

    try:
        balance = lock_balance(user_id, db)
        if balance is None:
            return _rejected('commit', 'missing_credit_account', user_id, request_id)

        _reset_if_due_locked(balance, db)

        reservation = _lock_reservation(db, user_id, request_id)
        if reservation is None:
            db.commit()
            return _rejected('commit', 'missing_reservation', user_id, request_id)

        if reservation.status == ReservationStatus.COMMITTED:
            result = {'ok': True, 'idempotent': True, **_split_result(reservation), **balance_snapshot(balance)}
            db.commit()
            record_operation('commit', result)
            return result

        if reservation.status != ReservationStatus.RESERVED:
            status = reservation.status
            db.commit()
            return _rejected('commit', 'invalid_reservation_state', user_id, request_id, status=status)

        monthly_part = reservation.monthly_amount
        bonus_part = reservation.bonus_amount
        balance.reserved_monthly = max(0, balance.reserved_monthly - monthly_part)
        balance.reserved_bonus = max(0, balance.reserved_bonus - bonus_part)
        balance.monthly_used += monthly_part
        balance.bonus_used += bonus_part
        balance.updated_at = datetime.now(timezone.utc)
        reservation.status = ReservationStatus.COMMITTED

        sync_balance_projection(balance, db)
        append_transaction(
            db, balance, TransactionType.USAGE,
            amount=0,
            monthly_amount=monthly_part,
            bonus_amount=bonus_part,
            request_id=request_id,
            settles=find_entry(db, user_id, request_id, TransactionType.RESERVATION),
            description=f"Charged for {reservation.feature}" if reservation.feature else "Charged",
            context=_settlement_context('completed', source, metadata),
        )
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error committing reservation {request_id} for user {user_id}: {e}", exc_info=True)
        db.rollback()
        raise

    result = {'ok': True, **_split_result(reservation), **balance_snapshot(balance)}
    ledger_logger.info(
        f"Committed reservation {request_id} for user {user_id}: "
        f"{monthly_part} monthly, {bonus_part} bonus used; "
        f"remaining {result['remaining_monthly']}/{result['remaining_bonus']}"
    )
    record_operation('commit', result)
    return result


def _release_locked(
    db: Session,
    balance: CreditBalance,
    reservation: CreditReservation,
    reason: Optional[str],
    metadata: Optional[Mapping[str, Any]],
    source: str,
    failure_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Void the hold of a reserved reservation (both rows already locked)"""
    monthly_part = reservation.monthly_amount
    bonus_part = reservation.bonus_amount
    balance.reserved_monthly = max(0, balance.reserved_monthly - monthly_part)
    balance.reserved_bonus = max(0, balance.reserved_bonus - bonus_part)
    balance.updated_at = datetime.now(timezone.utc)
    reservation.status = ReservationStatus.RELEASED

    sync_balance_projection(balance, db)
    append_transaction(
        db, balance, TransactionType.RELEASE,
        amount=monthly_part + bonus_part,
        monthly_amount=monthly_part,
        bonus_amount=bonus_part,
        request_id=reservation.request_id,
        settles=find_entry(db, balance.user_id, reservation.request_id, TransactionType.RESERVATION),
        description=f"Released: {reason}" if reason else "Released",
        context=_settlement_context(reason, source, metadata, failure_reason),
    )
    db.commit()

    result = {
        'ok': True,
        **_split_result(reservation),
        'released_monthly': monthly_part,
        'released_bonus': bonus_part,
        **balance_snapshot(balance),
    }
    ledger_logger.info(
        f"Released reservation {reservation.request_id} for user {balance.user_id} "
        f"({monthly_part} monthly, {bonus_part} bonus, reason={reason}); "
        f"remaining {result['remaining_monthly']}/{result['remaining_bonus']}"
    )
    return result


def _refund_locked(
    db: Session,
    balance: CreditBalance,
    reservation: CreditReservation,
    reason: Optional[str],
    metadata: Optional[Mapping[str, Any]],
    source: str,
    failure_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Reverse the spend of a committed reservation (both rows already locked)

    Usage restored is capped at what the current window still records, so a
    refund after a cycle reset never drives usage negative.
    """
    refunded_monthly = min(reservation.monthly_amount, balance.monthly_used)
    refunded_bonus = min(reservation.bonus_amount, balance.bonus_used)
    balance.monthly_used -= refunded_monthly
    balance.bonus_used -= refunded_bonus
    balance.updated_at = datetime.now(timezone.utc)
    reservation.status = ReservationStatus.RELEASED

    sync_balance_projection(balance, db)
    append_transaction(
        db, balance, TransactionType.REFUND,
        amount=refunded_monthly + refunded_bonus,
        monthly_amount=refunded_monthly,
        bonus_amount=refunded_bonus,
        request_id=reservation.request_id,
        settles=find_entry(db, balance.user_id, reservation.request_id, TransactionType.USAGE),
        description=f"Refunded: {reason}" if reason else "Refunded",
        context=_settlement_context(reason, source, metadata, failure_reason),
    )
    db.commit()

    result = {
        'ok': True,
        **_split_result(reservation),
        'refunded_monthly': refunded_monthly,
        'refunded_bonus': refunded_bonus,
        **balance_snapshot(balance),
    }
    ledger_logger.info(
        f"Refunded reservation {reservation.request_id} for user {balance.user_id} "
        f"({refunded_monthly} monthly, {refunded_bonus} bonus, reason={reason}); "
        f"remaining {result['remaining_monthly']}/{result['remaining_bonus']}"
    )
    return result


@traced_operation("release")
def release(
    user_id: int,
    request_id: str,
    db: Session,
    reason: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    source: str = 'caller',
    failure_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Return a hold to the user; a committed reservation is refunded instead"""
    check = _check_identity(user_id, request_id)
    if check:
        return _rejected('release', check, user_id, request_id)

    try:
        balance = lock_balance(user_id, db)
        if balance is None:
            return _rejected('release', 'missing_reservation', user_id, request_id)

        reservation = _lock_reservation(db, user_id, request_id)
        if reservation is None:
            db.commit()
            return _rejected('release', 'missing_reservation', user_id, request_id)

        if reservation.status == ReservationStatus.RELEASED:
            result = {'ok': True, 'already_released': True, **_split_result(reservation), **balance_snapshot(balance)}
            db.commit()
        elif reservation.status == ReservationStatus.COMMITTED:
            result = _refund_locked(db, balance, reservation, reason, metadata, source, failure_reason)
            result['delegated_to'] = 'refund'
        elif reservation.status == ReservationStatus.RESERVED:
            result = _release_locked(db, balance, reservation, reason, metadata, source, failure_reason)
        else:
            status = reservation.status
            db.commit()
            return _rejected('release', 'invalid_reservation_state', user_id, request_id, status=status)
    except SQLAlchemyError as e:
        logger.error(f"Error releasing reservation {request_id} for user {user_id}: {e}", exc_info=True)
        db.rollback()
        raise

    record_operation('release', result)
    return result


@traced_operation("refund")
def refund(
    user_id: int,
    request_id: str,
    db: Session,
    reason: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    source: str = 'caller',
    failure_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Reverse a spend for a request, whatever phase it is in

    Safe to call unconditionally from cleanup code: a reserved request is
    released, an already-refunded one is a no-op, and a request that was
    charged directly without a reservation is reversed from its usage entries.
    Nothing to reverse is a successful no-op (reason ``no_usage_to_refund``).
    """
    check = _check_identity(user_id, request_id)
    if check:
        return _rejected('refund', check, user_id, request_id)

    try:
        balance = lock_balance(user_id, db)
        if balance is None:
            return _rejected('refund', 'missing_credit_account', user_id, request_id)

        previous = find_entry(db, user_id, request_id, TransactionType.REFUND)
        if previous is not None:
            result = {
                'ok': True,
                'already_refunded': True,
                'request_id': request_id,
                'refunded_monthly': previous.monthly_amount,
                'refunded_bonus': previous.bonus_amount,
                **balance_snapshot(balance),
            }
            db.commit()
            record_operation('refund', result)
            return result

        reservation = _lock_reservation(db, user_id, request_id)
        if reservation is not None:
            if reservation.status == ReservationStatus.RESERVED:
                result = _release_locked(db, balance, reservation, reason, metadata, source, failure_reason)
                result.update({'delegated_to': 'release', 'refunded_monthly': 0, 'refunded_bonus': 0})
            elif reservation.status == ReservationStatus.COMMITTED:
                result = _refund_locked(db, balance, reservation, reason, metadata, source, failure_reason)
            else:
                # Released before it was ever charged
                result = {
                    'ok': True,
                    'already_released': True,
                    **_split_result(reservation),
                    'refunded_monthly': 0,
                    'refunded_bonus': 0,
                    **balance_snapshot(balance),
                }
                db.commit()
            record_operation('refund', result)
            return result

        result = _refund_legacy_usage(db, balance, request_id, reason, metadata, source, failure_reason)
    except SQLAlchemyError as e:
        logger.error(f"Error refunding request {request_id} for user {user_id}: {e}", exc_info=True)
        db.rollback()
        raise

    record_operation('refund', result)
    return result


def _refund_legacy_usage(
    db: Session,
    balance: CreditBalance,
    request_id: str,
    reason: Optional[str],
    metadata: Optional[Mapping[str, Any]],
    source: str,
    failure_reason: Optional[str],
) -> Dict[str, Any]:
    """Reverse direct charges made without a reservation by summing their usage entries"""
    usage_entries = find_legacy_usage(db, balance.user_id, request_id)
    if not usage_entries:
        result = {
            'ok': True,
            'noop': True,
            'reason': 'no_usage_to_refund',
            'request_id': request_id,
            'refunded_monthly': 0,
            'refunded_bonus': 0,
            **balance_snapshot(balance),
        }
        db.commit()
        ledger_logger.info(f"Nothing to refund for user {balance.user_id}, request {request_id}")
        return result

    refunded_monthly = min(sum(e.monthly_amount for e in usage_entries), balance.monthly_used)
    refunded_bonus = min(sum(e.bonus_amount for e in usage_entries), balance.bonus_used)
    balance.monthly_used -= refunded_monthly
    balance.bonus_used -= refunded_bonus
    balance.updated_at = datetime.now(timezone.utc)

    sync_balance_projection(balance, db)
    append_transaction(
        db, balance, TransactionType.REFUND,
        amount=refunded_monthly + refunded_bonus,
        monthly_amount=refunded_monthly,
        bonus_amount=refunded_bonus,
        request_id=request_id,
        settles=usage_entries[-1],
        description=f"Refunded: {reason}" if reason else "Refunded",
        context=_settlement_context(reason, source, metadata, failure_reason),
    )
    db.commit()

    result = {
        'ok': True,
        'legacy': True,
        'request_id': request_id,
        'refunded_monthly': refunded_monthly,
        'refunded_bonus': refunded_bonus,
        **balance_snapshot(balance),
    }
    ledger_logger.info(
        f"Refunded direct usage for user {balance.user_id}, request {request_id} "
        f"({refunded_monthly} monthly, {refunded_bonus} bonus from {len(usage_entries)} entries)"
    )
    return result


@traced_operation("consume")
def consume(
    user_id: int,
    request_id: str,
    amount: int,
    db: Session,
    feature: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Charge credits directly without a reservation (older callers)

    Idempotent on an existing direct charge for the request id. Refund reverses
    these through its usage-entry fallback.
    """
    reason = _check_identity(user_id, request_id)
    if reason is None and not _check_amount(amount):
        reason = 'invalid_amount'
    if reason:
        return _rejected('consume', reason, user_id, request_id)

    try:
        balance = lock_balance(user_id, db)
        if balance is None:
            return _rejected('consume', 'missing_credit_account', user_id, request_id)

        previous = find_legacy_usage(db, user_id, request_id)
        if previous:
            result = {
                'ok': True,
                'idempotent': True,
                'request_id': request_id,
                'amount': -sum(e.amount for e in previous),
                'monthly_amount': sum(e.monthly_amount for e in previous),
                'bonus_amount': sum(e.bonus_amount for e in previous),
                **balance_snapshot(balance),
            }
            db.commit()
            record_operation('consume', result)
            return result

        if db.query(CreditReservation.id).filter(CreditReservation.request_id == request_id).first():
            db.commit()
            return _rejected('consume', 'request_id_conflict', user_id, request_id)

        _reset_if_due_locked(balance, db)

        split = _admit(balance, amount)
        if split is None:
            snapshot = balance_snapshot(balance)
            db.commit()
            return _rejected(
                'consume', 'insufficient_credits', user_id, request_id,
                requested=amount,
                available=snapshot['remaining_monthly'] + snapshot['remaining_bonus'],
                **snapshot
            )

        monthly_part, bonus_part = split
        balance.monthly_used += monthly_part
        balance.bonus_used += bonus_part
        balance.updated_at = datetime.now(timezone.utc)

        sync_balance_projection(balance, db)
        append_transaction(
            db, balance, TransactionType.USAGE,
            amount=-amount,
            monthly_amount=monthly_part,
            bonus_amount=bonus_part,
            request_id=request_id,
            description=description or (f"Charged for {feature}" if feature else "Charged"),
            context=LegacyUsageContext(
                description=description,
                feature=feature,
                attributes=clean_attributes(metadata),
            ),
        )
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error consuming {amount} credits for user {user_id}, request {request_id}: {e}", exc_info=True)
        db.rollback()
        raise

    result = {
        'ok': True,
        'request_id': request_id,
        'amount': amount,
        'monthly_amount': monthly_part,
        'bonus_amount': bonus_part,
        **balance_snapshot(balance),
    }
    ledger_logger.info(
        f"Charged {amount} credits directly for user {user_id}, request {request_id} "
        f"({monthly_part} monthly, {bonus_part} bonus)"
    )
    record_operation('consume', result)
    return result
