"""Internal credit ledger RPC routes

Called by generation workers, the billing sync and admin tooling. Every
response body is the structured ledger result; the HTTP status mirrors
its outcome.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from credit_ledger.core.config import settings
from credit_ledger.core.security import require_internal_key
from credit_ledger.db.session import get_db
from credit_ledger.models.generation_attempt import GenerationStatus
from credit_ledger.schemas.credits import (
    AdjustRequest, CommitRequest, CompensationScanRequest, ConsumeRequest,
    GenerationOutcomeRequest, GenerationStartedRequest, GrantRequest, RefundRequest,
    ReleaseRequest, ReserveRequest, ResetCycleRequest, SubscriptionStateRequest, TierChangeRequest
)
from credit_ledger.services import billing_service, generation_service, reservation_service
from credit_ledger.services.compensation_service import count_open_reservations, scan
from credit_ledger.services.balance_service import get_credit_balance
from credit_ledger.services.cycle_service import change_tier, reset_if_due

router = APIRouter(
    prefix="/api/internal/credits",
    tags=["internal-credits"],
    dependencies=[Depends(require_internal_key)]
)

REASON_STATUS_CODES = {
    'insufficient_credits': 402,
    'missing_reservation': 404,
    'missing_credit_account': 404,
    'missing_attempt': 404,
    'invalid_reservation_state': 409,
    'request_id_conflict': 409,
    'invalid_transition': 409,
}


def ledger_response(result: Dict[str, Any]) -> JSONResponse:
    """200 for ok results, otherwise the status for the failure reason (422 for input errors)"""
    if result.get("ok"):
        status_code = 200
    else:
        status_code = REASON_STATUS_CODES.get(result.get("reason"), 422)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))


@router.post("/reserve")
def reserve_credits(body: ReserveRequest, db: Session = Depends(get_db)):
    return ledger_response(reservation_service.reserve(
        body.user_id, body.request_id, body.amount, db,
        feature=body.feature, metadata=body.metadata
    ))


@router.post("/commit")
def commit_credits(body: CommitRequest, db: Session = Depends(get_db)):
    return ledger_response(reservation_service.commit(body.user_id, body.request_id, db, metadata=body.metadata))


@router.post("/release")
def release_credits(body: ReleaseRequest, db: Session = Depends(get_db)):
    return ledger_response(reservation_service.release(
        body.user_id, body.request_id, db, reason=body.reason, metadata=body.metadata
    ))


@router.post("/refund")
def refund_credits(body: RefundRequest, db: Session = Depends(get_db)):
    return ledger_response(reservation_service.refund(
        body.user_id, body.request_id, db, reason=body.reason, metadata=body.metadata
    ))


@router.post("/consume")
def consume_credits(body: ConsumeRequest, db: Session = Depends(get_db)):
    """Direct charge without a reservation (older generation paths)"""
    return ledger_response(reservation_service.consume(
        body.user_id, body.request_id, body.amount, db,
        feature=body.feature, metadata=body.metadata, description=body.description
    ))


@router.post("/reset-cycle")
def reset_cycle(body: ResetCycleRequest, db: Session = Depends(get_db)):
    return ledger_response(reset_if_due(body.user_id, db))


@router.get("/balance/{user_id}")
def balance_detail(user_id: int, db: Session = Depends(get_db)):
    """Full balance row detail for admin tooling (the UI reads the projection)"""
    balance = get_credit_balance(user_id, db)
    if balance is None:
        return ledger_response({"ok": False, "reason": "missing_credit_account", "user_id": user_id})
    return ledger_response({"ok": True, **balance})


@router.post("/tier")
def set_tier(body: TierChangeRequest, db: Session = Depends(get_db)):
    return ledger_response(change_tier(body.user_id, body.tier, db))


@router.post("/subscription-state")
def subscription_state(body: SubscriptionStateRequest, db: Session = Depends(get_db)):
    return ledger_response(billing_service.apply_subscription_state(
        body.user_id, body.tier, body.cycle_start, body.cycle_end, db,
        event_id=body.event_id, invoice_id=body.invoice_id, price_id=body.price_id,
        reset_usage=body.reset_usage
    ))


@router.post("/grant")
def grant(body: GrantRequest, db: Session = Depends(get_db)):
    return ledger_response(billing_service.grant_credits(
        body.user_id, body.amount, db,
        transaction_type=body.transaction_type,
        external_reference=body.external_reference,
        reason=body.reason,
        pack=body.pack,
        checkout_session_id=body.checkout_session_id,
        payment_intent_id=body.payment_intent_id,
        actor=body.actor
    ))


@router.post("/adjust")
def adjust(body: AdjustRequest, db: Session = Depends(get_db)):
    return ledger_response(billing_service.adjust_credits(
        body.user_id, body.delta, db, reason=body.reason, actor=body.actor
    ))


@router.post("/compensation/scan")
def compensation_scan(body: CompensationScanRequest, db: Session = Depends(get_db)):
    """Run a compensation sweep on demand (dry run by configuration default)"""
    dry_run = settings.COMPENSATION_DRY_RUN if body.dry_run is None else body.dry_run
    rows = scan(
        db,
        user_id=body.user_id,
        lookback_minutes=body.lookback_minutes,
        dry_run=dry_run,
        limit=body.limit or settings.COMPENSATION_BATCH_SIZE,
        stale_minutes=body.stale_minutes
    )
    return ledger_response({
        "ok": True,
        "dry_run": dry_run,
        "rows": rows,
        "open_reservations": count_open_reservations(db),
    })


@router.post("/generation-attempts")
def generation_started(body: GenerationStartedRequest, db: Session = Depends(get_db)):
    return ledger_response(generation_service.record_generation_started(
        body.user_id, body.request_id, db, feature=body.feature, credits_amount=body.credits_amount
    ))


@router.post("/generation-attempts/{request_id}/outcome")
def generation_outcome(request_id: str, body: GenerationOutcomeRequest, db: Session = Depends(get_db)):
    if body.status == GenerationStatus.SUCCEEDED:
        result = generation_service.record_generation_succeeded(request_id, db, user_id=body.user_id)
    else:
        result = generation_service.record_generation_failed(
            request_id, db, user_id=body.user_id,
            error_stage=body.error_stage, error_message=body.error_message
        )
    return ledger_response(result)
