"""Billing sync - subscription state, credit grants and admin adjustments

Called by the subscription/payment collaborator after it has verified its
events. Every grant is idempotent on an external reference.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credit_ledger.core.config import FIRST_SUBSCRIPTION_BONUS, TIERS, credits_per_cycle_for_tier
from credit_ledger.core.logging import ledger_logger
from credit_ledger.core.metrics import record_operation
from credit_ledger.models.credit_balance import CycleSource
from credit_ledger.models.credit_transaction import TransactionType
from credit_ledger.schemas.ledger_context import AdjustmentContext, BillingContext, PurchaseContext
from credit_ledger.services.balance_service import balance_snapshot, lock_balance
from credit_ledger.services.projection_service import sync_balance_projection
from credit_ledger.services.transaction_log import append_transaction, find_by_reference
from credit_ledger.utils.cycle_window import as_utc, is_anchored_on

logger = logging.getLogger(__name__)


def _is_upgrade(previous_tier: str, tier: str) -> bool:
    if previous_tier not in TIERS or tier not in TIERS:
        return False
    return TIERS.index(tier) > TIERS.index(previous_tier)


def apply_subscription_state(
    user_id: int,
    tier: str,
    cycle_start: datetime,
    cycle_end: datetime,
    db: Session,
    event_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    price_id: Optional[str] = None,
    reset_usage: bool = False,
) -> Dict[str, Any]:
    """Apply a billing period to the user's balance

    Switches the balance to a subscription-anchored window. With
    ``reset_usage`` (new subscription, renewal invoice, plan switch) the
    allowance is granted immediately: monthly usage is zeroed, unused monthly
    credits are carried into bonus on an upgrade, and the one-time first
    subscription bonus is applied. Without it only the tier and window are
    recorded and the allowance follows at the next boundary.
    """
    if tier not in TIERS:
        return {'ok': False, 'reason': 'invalid_tier'}

    cycle_start = as_utc(cycle_start)
    cycle_end = as_utc(cycle_end)
    if cycle_start is None or cycle_end is None or cycle_end <= cycle_start:
        return {'ok': False, 'reason': 'invalid_cycle_window'}

    reference = invoice_id or event_id

    try:
        balance = lock_balance(user_id, db)
        if balance is None:
            result = {'ok': False, 'reason': 'missing_credit_account'}
            record_operation('subscription_state', result)
            return result

        if reset_usage and reference and find_by_reference(
            db, user_id, reference, (TransactionType.SUBSCRIPTION_GRANT,)
        ):
            result = {'ok': True, 'idempotent': True, 'tier': balance.tier, **balance_snapshot(balance)}
            db.commit()
            logger.info(f"Subscription grant {reference} already applied for user {user_id}")
            record_operation('subscription_state', result)
            return result

        previous_tier = balance.tier
        if balance.cycle_source != CycleSource.SUBSCRIPTION or not is_anchored_on(balance.cycle_anchor, cycle_start):
            balance.cycle_anchor = cycle_start
        balance.tier = tier
        balance.cycle_source = CycleSource.SUBSCRIPTION
        balance.cycle_start = cycle_start
        balance.cycle_end = cycle_end
        balance.updated_at = datetime.now(timezone.utc)

        carried_over = 0
        first_bonus = 0
        if reset_usage:
            if _is_upgrade(previous_tier, tier):
                carried_over = balance.available_monthly
                balance.bonus_total += carried_over

            allowance = credits_per_cycle_for_tier(tier)
            balance.monthly_allowance = max(allowance, balance.reserved_monthly)
            balance.monthly_used = 0
            balance.last_reset_at = datetime.now(timezone.utc)

            sync_balance_projection(balance, db)
            append_transaction(
                db, balance, TransactionType.SUBSCRIPTION_GRANT,
                amount=balance.monthly_allowance + carried_over,
                monthly_amount=balance.monthly_allowance,
                bonus_amount=carried_over,
                external_reference=reference,
                description=f"{tier.capitalize()} subscription allowance",
                context=BillingContext(
                    tier=tier,
                    event_id=event_id,
                    invoice_id=invoice_id,
                    price_id=price_id,
                    carried_over=carried_over,
                ),
            )

            if not balance.bonus_granted and tier in FIRST_SUBSCRIPTION_BONUS:
                first_bonus = FIRST_SUBSCRIPTION_BONUS[tier]
                balance.bonus_total += first_bonus
                balance.bonus_granted = True

                sync_balance_projection(balance, db)
                append_transaction(
                    db, balance, TransactionType.BONUS,
                    amount=first_bonus,
                    bonus_amount=first_bonus,
                    external_reference=f"first_subscription:{user_id}",
                    description=f"First {tier} subscription bonus",
                    context=BillingContext(tier=tier, event_id=event_id, invoice_id=invoice_id, price_id=price_id),
                )
        else:
            sync_balance_projection(balance, db)

        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error applying subscription state for user {user_id}: {e}", exc_info=True)
        db.rollback()
        raise

    result = {
        'ok': True,
        'tier': tier,
        'previous_tier': previous_tier,
        'granted': reset_usage,
        'carried_over': carried_over,
        'first_subscription_bonus': first_bonus,
        'cycle_start': cycle_start.isoformat(),
        'cycle_end': cycle_end.isoformat(),
        **balance_snapshot(balance),
    }
    ledger_logger.info(
        f"Subscription state for user {user_id}: {previous_tier} -> {tier}, "
        f"window {cycle_start.isoformat()} -> {cycle_end.isoformat()}"
        + (f", granted {result['monthly_allowance']} monthly (+{carried_over} carried, +{first_bonus} bonus)"
           if reset_usage else "")
    )
    record_operation('subscription_state', result)
    return result


def grant_credits(
    user_id: int,
    amount: int,
    db: Session,
    transaction_type: str = TransactionType.PURCHASE,
    external_reference: Optional[str] = None,
    reason: Optional[str] = None,
    pack: Optional[str] = None,
    checkout_session_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    """Add purchased or granted credits to the bonus pool"""
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        return {'ok': False, 'reason': 'invalid_amount'}
    if transaction_type not in (TransactionType.PURCHASE, TransactionType.BONUS):
        return {'ok': False, 'reason': 'invalid_transaction_type'}

    try:
        balance = lock_balance(user_id, db)
        if balance is None:
            result = {'ok': False, 'reason': 'missing_credit_account'}
            record_operation('grant', result)
            return result

        if external_reference and find_by_reference(db, user_id, external_reference, TransactionType.GRANTS):
            result = {'ok': True, 'idempotent': True, 'external_reference': external_reference, **balance_snapshot(balance)}
            db.commit()
            record_operation('grant', result)
            return result

        balance.bonus_total += amount
        balance.updated_at = datetime.now(timezone.utc)

        if transaction_type == TransactionType.PURCHASE:
            context = PurchaseContext(
                pack=pack,
                checkout_session_id=checkout_session_id,
                payment_intent_id=payment_intent_id,
            )
        else:
            context = AdjustmentContext(reason=reason, actor=actor)

        sync_balance_projection(balance, db)
        append_transaction(
            db, balance, transaction_type,
            amount=amount,
            bonus_amount=amount,
            external_reference=external_reference,
            description=reason or f"{transaction_type.capitalize()} of {amount} credits",
            context=context,
        )
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error granting {amount} credits to user {user_id}: {e}", exc_info=True)
        db.rollback()
        raise

    result = {'ok': True, 'amount': amount, 'transaction_type': transaction_type, **balance_snapshot(balance)}
    ledger_logger.info(f"Granted {amount} {transaction_type} credits to user {user_id} (ref={external_reference})")
    record_operation('grant', result)
    return result


def adjust_credits(
    user_id: int,
    delta: int,
    db: Session,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    """Admin correction of the bonus pool

    A negative delta may not take the pool below what is already used or held.
    """
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        return {'ok': False, 'reason': 'invalid_amount'}

    try:
        balance = lock_balance(user_id, db)
        if balance is None:
            result = {'ok': False, 'reason': 'missing_credit_account'}
            record_operation('adjust', result)
            return result

        if balance.bonus_total + delta < balance.bonus_used + balance.reserved_bonus:
            result = {'ok': False, 'reason': 'insufficient_credits', 'requested': delta, **balance_snapshot(balance)}
            db.commit()
            logger.warning(f"Adjustment of {delta} for user {user_id} rejected: bonus pool would go below used + reserved")
            record_operation('adjust', result)
            return result

        balance.bonus_total += delta
        balance.updated_at = datetime.now(timezone.utc)

        sync_balance_projection(balance, db)
        append_transaction(
            db, balance, TransactionType.ADJUSTMENT,
            amount=delta,
            bonus_amount=abs(delta),
            description=reason or "Admin adjustment",
            context=AdjustmentContext(reason=reason, actor=actor),
        )
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error adjusting credits for user {user_id}: {e}", exc_info=True)
        db.rollback()
        raise

    result = {'ok': True, 'delta': delta, **balance_snapshot(balance)}
    ledger_logger.info(f"Adjusted bonus credits for user {user_id} by {delta} (actor={actor}, reason={reason})")
    record_operation('adjust', result)
    return result
