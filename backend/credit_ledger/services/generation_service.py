"""Generation attempts - job records reported by the generation workers

Terminal transitions publish a settlement event so the ledger settles the
matching reservation without the worker having to call commit/release itself.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from credit_ledger.core.config import settings
from credit_ledger.db.task_queue import publish_settlement_event
from credit_ledger.models.generation_attempt import GenerationAttempt, GenerationStatus

logger = logging.getLogger(__name__)


def _serialize_attempt(attempt: GenerationAttempt) -> Dict[str, Any]:
    return {
        'request_id': attempt.request_id,
        'user_id': attempt.user_id,
        'feature': attempt.feature,
        'status': attempt.status,
        'credits_amount': attempt.credits_amount,
        'error_stage': attempt.error_stage,
        'error_message': attempt.error_message,
    }


def get_generation_attempt(request_id: str, db: Session) -> Optional[GenerationAttempt]:
    return db.query(GenerationAttempt).filter(GenerationAttempt.request_id == request_id).first()


def record_generation_started(
    user_id: int,
    request_id: str,
    db: Session,
    feature: Optional[str] = None,
    credits_amount: Optional[int] = None,
) -> Dict[str, Any]:
    """Record that a billable job has started (idempotent on request id)"""
    if not user_id:
        return {'ok': False, 'reason': 'missing_user_id'}
    if not request_id:
        return {'ok': False, 'reason': 'missing_request_id'}

    existing = get_generation_attempt(request_id, db)
    if existing is not None:
        if existing.user_id != user_id:
            return {'ok': False, 'reason': 'request_id_conflict'}
        return {'ok': True, 'idempotent': True, **_serialize_attempt(existing)}

    attempt = GenerationAttempt(
        request_id=request_id,
        user_id=user_id,
        feature=feature,
        status=GenerationStatus.STARTED,
        credits_amount=credits_amount,
    )
    db.add(attempt)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_generation_attempt(request_id, db)
        if existing is None:
            raise
        return {'ok': True, 'idempotent': True, **_serialize_attempt(existing)}
    except SQLAlchemyError as e:
        logger.error(f"Error recording generation start {request_id}: {e}", exc_info=True)
        db.rollback()
        raise

    logger.info(f"Generation {request_id} started for user {user_id} ({feature}, {credits_amount} credits)")
    return {'ok': True, **_serialize_attempt(attempt)}


def _record_outcome(
    request_id: str,
    status: str,
    db: Session,
    user_id: Optional[int] = None,
    error_stage: Optional[str] = None,
    error_message: Optional[str] = None,
) -> Dict[str, Any]:
    attempt = db.query(GenerationAttempt).filter(
        GenerationAttempt.request_id == request_id
    ).with_for_update().populate_existing().first()

    if attempt is None:
        if not user_id:
            return {'ok': False, 'reason': 'missing_attempt'}
        attempt = GenerationAttempt(request_id=request_id, user_id=user_id, status=GenerationStatus.STARTED)
        db.add(attempt)
    elif user_id and attempt.user_id != user_id:
        db.rollback()
        return {'ok': False, 'reason': 'request_id_conflict'}

    if attempt.status == status:
        db.commit()
        return {'ok': True, 'idempotent': True, **_serialize_attempt(attempt)}

    # A success can later be found to have failed; a failure is final
    if attempt.status == GenerationStatus.FAILED:
        previous = attempt.status
        db.commit()
        return {'ok': False, 'reason': 'invalid_transition', 'status': previous}

    attempt.status = status
    attempt.error_stage = error_stage
    attempt.error_message = error_message
    attempt.updated_at = datetime.now(timezone.utc)

    try:
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error recording generation outcome {request_id}: {e}", exc_info=True)
        db.rollback()
        raise

    result = {'ok': True, **_serialize_attempt(attempt)}
    logger.info(f"Generation {request_id} for user {attempt.user_id} {status}"
                + (f" at {error_stage}: {error_message}" if status == GenerationStatus.FAILED else ""))

    if settings.SETTLEMENT_QUEUE_ENABLED:
        try:
            result['settlement_task_id'] = publish_settlement_event(
                request_id, attempt.user_id, status, error=error_message
            )
        except RedisError as e:
            # The compensation sweep picks up failed attempts that were never settled
            logger.error(f"Failed to publish settlement event for {request_id}: {e}", exc_info=True)
            result['settlement_task_id'] = None

    return result


def record_generation_succeeded(request_id: str, db: Session, user_id: Optional[int] = None) -> Dict[str, Any]:
    return _record_outcome(request_id, GenerationStatus.SUCCEEDED, db, user_id=user_id)


def record_generation_failed(
    request_id: str,
    db: Session,
    user_id: Optional[int] = None,
    error_stage: Optional[str] = None,
    error_message: Optional[str] = None,
) -> Dict[str, Any]:
    return _record_outcome(
        request_id, GenerationStatus.FAILED, db,
        user_id=user_id, error_stage=error_stage, error_message=error_message,
    )
