"""Compensation sweeper - settles reservations orphaned by failed or abandoned generations

Finds generation attempts whose reservation is still ``reserved`` (never
released) or ``committed`` (charged for work that failed) and drives them to
``released`` through the regular release/refund operations. Attempts stuck in
``started`` past the stale threshold are closed as timeouts first, and holds
with no attempt at all are released once they are equally old. Each attempt
is claimed with ``FOR UPDATE SKIP LOCKED`` so concurrent sweeps skip rows
another sweep is already handling.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import and_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credit_ledger.core.config import settings
from credit_ledger.core.logging import compensation_logger
from credit_ledger.core.metrics import compensation_actions_counter, open_reservations_gauge
from credit_ledger.models.credit_monitoring_event import CreditMonitoringEvent
from credit_ledger.models.credit_reservation import CreditReservation, ReservationStatus
from credit_ledger.models.credit_transaction import TransactionType
from credit_ledger.models.generation_attempt import GenerationAttempt, GenerationStatus
from credit_ledger.services.reservation_service import refund, release
from credit_ledger.services.transaction_log import find_entry

logger = logging.getLogger(__name__)

OPEN_STATUSES = (ReservationStatus.RESERVED, ReservationStatus.COMMITTED)

TIMEOUT_STAGE = "timeout_cleanup"
TIMEOUT_MESSAGE = "Operation timed out"
NO_ATTEMPT_REASON = "no_generation_attempt"


def _record_monitoring_event(db: Session, user_id: int, request_id: str, feature: Optional[str],
                             event_type: str, details: Dict[str, Any]) -> None:
    db.add(CreditMonitoringEvent(
        user_id=user_id,
        request_id=request_id,
        feature=feature,
        event_type=event_type,
        details=details,
    ))
    db.commit()


def _compensate_attempt(db: Session, attempt_id: int, dry_run: bool,
                        timed_out: bool = False) -> Optional[Dict[str, Any]]:
    """Claim one failed attempt and settle its reservation

    In a dry run a timed-out attempt is still ``started``; it is reported as
    the timeout it would be closed as.

    Returns None when the row is held by another sweep or was settled since
    candidate selection.
    """
    attempt = db.query(GenerationAttempt).filter(
        GenerationAttempt.id == attempt_id
    ).with_for_update(skip_locked=True).populate_existing().first()
    if attempt is None:
        db.rollback()
        return None

    reservation = db.query(CreditReservation).filter(
        CreditReservation.request_id == attempt.request_id,
        CreditReservation.user_id == attempt.user_id,
    ).first()
    pending_timeout = timed_out and dry_run and attempt.status == GenerationStatus.STARTED
    if attempt.status != GenerationStatus.FAILED and not pending_timeout:
        db.rollback()
        return None
    if reservation is None or reservation.status not in OPEN_STATUSES:
        db.rollback()
        return None

    user_id = attempt.user_id
    request_id = attempt.request_id
    feature = attempt.feature
    reservation_status = reservation.status
    error_stage = TIMEOUT_STAGE if pending_timeout else attempt.error_stage
    error_message = TIMEOUT_MESSAGE if pending_timeout else attempt.error_message
    row = {
        'request_id': request_id,
        'user_id': user_id,
        'feature': feature,
        'status': GenerationStatus.FAILED,
        'timed_out': timed_out,
        'reservation_status': reservation_status,
        'credits_amount': attempt.credits_amount,
    }
    details: Dict[str, Any] = {
        'error_stage': error_stage,
        'error_message': error_message,
    }
    metadata = {
        'original_error_stage': error_stage,
        'original_error_message': error_message,
        'compensation_timestamp': datetime.now(timezone.utc).isoformat(),
    }

    if reservation_status == ReservationStatus.RESERVED:
        details.update({'reserved_amount': reservation.amount, 'compensation_type': 'release_stale_reservation'})
        if dry_run:
            db.rollback()
            action = 'would_release'
        else:
            details['release_result'] = release(
                user_id, request_id, db,
                reason='Compensation: unreleased reservation for failed generation',
                metadata=metadata,
                source='compensation',
                failure_reason=details['error_message'],
            )
            _record_monitoring_event(db, user_id, request_id, feature, 'compensation_release', details)
            action = 'released'
    elif find_entry(db, user_id, request_id, TransactionType.REFUND) is not None:
        db.rollback()
        details['compensation_type'] = 'none_needed'
        action = 'already_refunded'
    else:
        details.update({'committed_amount': reservation.amount, 'compensation_type': 'refund_committed_credits'})
        if dry_run:
            db.rollback()
            action = 'would_refund'
        else:
            details['refund_result'] = refund(
                user_id, request_id, db,
                reason='Compensation: committed credits for failed generation',
                metadata=metadata,
                source='compensation',
                failure_reason=details['error_message'],
            )
            _record_monitoring_event(db, user_id, request_id, feature, 'compensation_refund', details)
            action = 'refunded'

    compensation_actions_counter.labels(action=action).inc()
    compensation_logger.info(
        f"Compensation {action} for request {request_id} (user {user_id}, reservation {reservation_status}, "
        f"stage {details['error_stage']})"
    )
    return {**row, 'action_taken': action, 'details': details}


def _expire_stale_attempts(db: Session, stale_cutoff: datetime, user_id: Optional[int],
                           dry_run: bool, limit: int) -> List[int]:
    """Attempts still ``started`` past the stale cutoff; marked failed unless ``dry_run``

    A caller that crashed mid-generation never reports an outcome, so its
    attempt is closed here as a timeout and its reservation compensated like
    any other failure.
    """
    query = db.query(GenerationAttempt.id).filter(
        GenerationAttempt.status == GenerationStatus.STARTED,
        GenerationAttempt.created_at < stale_cutoff,
    )
    if user_id is not None:
        query = query.filter(GenerationAttempt.user_id == user_id)
    stale_ids = [attempt_id for (attempt_id,) in query.order_by(GenerationAttempt.created_at).limit(limit).all()]

    if not stale_ids or dry_run:
        db.rollback()
        return stale_ids

    try:
        # The status guard skips attempts that reported an outcome meanwhile
        expired = db.query(GenerationAttempt).filter(
            GenerationAttempt.id.in_(stale_ids),
            GenerationAttempt.status == GenerationStatus.STARTED,
        ).update({
            GenerationAttempt.status: GenerationStatus.FAILED,
            GenerationAttempt.error_stage: TIMEOUT_STAGE,
            GenerationAttempt.error_message: TIMEOUT_MESSAGE,
            GenerationAttempt.updated_at: datetime.now(timezone.utc),
        }, synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error expiring stale generation attempts: {e}", exc_info=True)
        db.rollback()
        raise

    compensation_logger.info(f"Marked {expired} generation attempts started before {stale_cutoff.isoformat()} as timed out")
    return stale_ids


def _release_unattended_reservations(db: Session, stale_cutoff: datetime, user_id: Optional[int],
                                     dry_run: bool, limit: int) -> List[Dict[str, Any]]:
    """Release holds older than the stale cutoff that no generation attempt ever claimed"""
    query = db.query(
        CreditReservation.user_id, CreditReservation.request_id, CreditReservation.feature, CreditReservation.amount
    ).outerjoin(
        GenerationAttempt, GenerationAttempt.request_id == CreditReservation.request_id
    ).filter(
        CreditReservation.status == ReservationStatus.RESERVED,
        CreditReservation.created_at < stale_cutoff,
        GenerationAttempt.id.is_(None),
    )
    if user_id is not None:
        query = query.filter(CreditReservation.user_id == user_id)
    orphans = query.order_by(CreditReservation.created_at).limit(limit).all()
    db.rollback()

    rows = []
    for owner_id, request_id, feature, amount in orphans:
        details: Dict[str, Any] = {'reserved_amount': amount, 'compensation_type': 'release_unattended_reservation'}
        if dry_run:
            action = 'would_release'
        else:
            # release() serialises on the balance lock; a concurrent sweep sees already_released
            result = release(
                owner_id, request_id, db,
                reason='Compensation: reservation without a generation attempt',
                metadata={'compensation_timestamp': datetime.now(timezone.utc).isoformat()},
                source='compensation',
                failure_reason=NO_ATTEMPT_REASON,
            )
            if not result.get('ok') or result.get('already_released') or result.get('delegated_to'):
                continue
            details['release_result'] = result
            _record_monitoring_event(db, owner_id, request_id, feature, 'compensation_orphan_release', details)
            action = 'released'

        compensation_actions_counter.labels(action=action).inc()
        compensation_logger.info(f"Compensation {action} for unattended request {request_id} (user {owner_id})")
        rows.append({
            'request_id': request_id,
            'user_id': owner_id,
            'feature': feature,
            'status': None,
            'timed_out': False,
            'reservation_status': ReservationStatus.RESERVED,
            'credits_amount': amount,
            'action_taken': action,
            'details': details,
        })
    return rows


def scan(
    db: Session,
    user_id: Optional[int] = None,
    lookback_minutes: int = 60,
    dry_run: bool = False,
    limit: int = 200,
    stale_minutes: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Detect and compensate orphaned reservations

    Three shapes are handled: failed generations created within the lookback
    window, generations still ``started`` after ``stale_minutes`` (closed as
    timeouts first), and reservations older than ``stale_minutes`` with no
    generation attempt at all. ``dry_run`` reports the same decisions
    (``would_release``/``would_refund``) without mutating anything.
    """
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=lookback_minutes)
    stale_cutoff = now - timedelta(minutes=settings.COMPENSATION_STALE_MINUTES if stale_minutes is None else stale_minutes)

    timed_out_ids = _expire_stale_attempts(db, stale_cutoff, user_id, dry_run, limit)

    query = db.query(GenerationAttempt.id).join(
        CreditReservation,
        and_(
            CreditReservation.request_id == GenerationAttempt.request_id,
            CreditReservation.user_id == GenerationAttempt.user_id,
        )
    ).filter(
        GenerationAttempt.status == GenerationStatus.FAILED,
        GenerationAttempt.created_at >= cutoff,
        CreditReservation.status.in_(OPEN_STATUSES),
    )
    if user_id is not None:
        query = query.filter(GenerationAttempt.user_id == user_id)

    candidate_ids = [attempt_id for (attempt_id,) in query.order_by(
        GenerationAttempt.created_at.desc()
    ).limit(limit).all()]
    db.rollback()
    candidate_ids += [attempt_id for attempt_id in timed_out_ids if attempt_id not in candidate_ids]

    rows = []
    for attempt_id in candidate_ids[:limit]:
        row = _compensate_attempt(db, attempt_id, dry_run, timed_out=attempt_id in timed_out_ids)
        if row is not None:
            rows.append(row)

    if len(rows) < limit:
        rows += _release_unattended_reservations(db, stale_cutoff, user_id, dry_run, limit - len(rows))

    if rows:
        compensation_logger.info(
            f"Compensation scan {'(dry run) ' if dry_run else ''}handled {len(rows)} requests "
            f"(lookback {lookback_minutes}m, {len(timed_out_ids)} timed out)"
        )
    return rows


def count_open_reservations(db: Session) -> int:
    """Reservations currently holding credits; also published as a gauge"""
    count = db.query(func.count(CreditReservation.id)).filter(
        CreditReservation.status == ReservationStatus.RESERVED
    ).scalar() or 0
    open_reservations_gauge.set(count)
    return count
