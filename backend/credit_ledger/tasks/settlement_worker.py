"""Background worker that settles reservations from generation outcome events

Consumes ``generation_settlement`` events published when a generation
attempt reaches a terminal state: success commits the reservation, failure
releases it (refunding when it was already committed).
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credit_ledger.core.logging import settlement_logger
from credit_ledger.core.metrics import settlement_events_counter
from credit_ledger.db.session import SessionLocal
from credit_ledger.db.task_queue import (
    SETTLEMENT_TASK, cleanup_stale_tasks, dequeue_task, get_task_status,
    mark_task_completed, mark_task_failed, mark_task_processing
)
from credit_ledger.models.generation_attempt import GenerationStatus
from credit_ledger.services.reservation_service import commit, release

logger = logging.getLogger(__name__)


def handle_settlement_event(payload: Dict[str, Any], db: Session) -> Dict[str, Any]:
    """Apply one generation outcome to its reservation

    Raises:
        ValueError: malformed payload (not retried)
    """
    request_id = payload.get("request_id")
    user_id = payload.get("user_id")
    status = payload.get("status")

    if not request_id or not user_id:
        raise ValueError("Settlement event missing request_id or user_id")

    if status == GenerationStatus.SUCCEEDED:
        result = commit(user_id, request_id, db, metadata={"settled_by": "generation_succeeded"},
                        source="settlement_worker")
    elif status == GenerationStatus.FAILED:
        result = release(user_id, request_id, db, reason="generation_failed",
                         metadata={"settled_by": "generation_failed"},
                         source="settlement_worker", failure_reason=payload.get("error"))
    else:
        raise ValueError(f"Unsupported generation status in settlement event: {status}")

    settlement_events_counter.labels(status=status).inc()
    if result.get("ok"):
        settlement_logger.info(f"Settled request {request_id} for user {user_id} after generation {status}")
    else:
        # e.g. the caller never reserved, or already settled the other way
        settlement_logger.warning(
            f"Settlement for request {request_id} (generation {status}) not applied: {result.get('reason')}"
        )
    return result


def process_settlement_task(task_data: Dict[str, Any]) -> None:
    """Process one queued settlement event in its own session"""
    task_id = task_data.get("task_id")
    payload = task_data.get("payload", {})

    mark_task_processing(task_id)
    db = SessionLocal()
    try:
        result = handle_settlement_event(payload, db)
        mark_task_completed(task_id, result)
    except ValueError as e:
        # Malformed events - don't retry
        logger.warning(f"Settlement task {task_id} rejected: {e}")
        mark_task_failed(task_id, str(e), retry=False)
        settlement_events_counter.labels(status="invalid").inc()
    except SQLAlchemyError as e:
        # Store unavailable - retry with exponential backoff
        logger.error(f"Settlement task {task_id} failed: {e}", exc_info=True)
        mark_task_failed(task_id, str(e), retry=True)
        settlement_events_counter.labels(status="error").inc()
    finally:
        db.close()


async def _wait_for_retry(task_data: Dict[str, Any]) -> None:
    task_id = task_data.get("task_id")
    task_meta = get_task_status(task_id)
    retry_after_str = task_meta.get("retry_after") if task_meta else None
    if not retry_after_str:
        return

    try:
        retry_after = datetime.fromisoformat(retry_after_str)
    except ValueError as e:
        logger.warning(f"Error parsing retry_after for task {task_id}: {e}")
        return

    delay_seconds = (retry_after - datetime.now(timezone.utc)).total_seconds()
    if delay_seconds > 0:
        logger.info(
            f"Settlement task {task_id} is retry attempt {task_data.get('retry_count', 0)}, "
            f"waiting {delay_seconds:.0f}s before processing"
        )
        await asyncio.sleep(delay_seconds)


async def settlement_worker_task() -> None:
    """Main worker loop that polls the settlement queue"""
    logger.info("Starting settlement worker task")

    while True:
        try:
            cleanup_stale_tasks(timeout_seconds=3600)

            task_data = await dequeue_task(SETTLEMENT_TASK, timeout=5)
            if task_data is None:
                continue

            await _wait_for_retry(task_data)
            # Ledger operations are blocking; keep them off the event loop
            await asyncio.to_thread(process_settlement_task, task_data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in settlement worker loop: {e}", exc_info=True)
            await asyncio.sleep(5)
