"""Background scheduler tasks for compensation sweeps and cycle resets"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from credit_ledger.core.config import settings
from credit_ledger.core.logging import compensation_logger
from credit_ledger.core.metrics import compensation_runs_counter
from credit_ledger.db.session import SessionLocal
from credit_ledger.models.credit_balance import CreditBalance
from credit_ledger.services.compensation_service import count_open_reservations, scan
from credit_ledger.services.cycle_service import reset_if_due

logger = logging.getLogger(__name__)

CYCLE_RESET_INTERVAL_SECONDS = 3600


def run_compensation_sweep(db: Optional[Session] = None) -> Dict[str, Any]:
    """One sweep with the configured lookback, batch size and dry-run mode"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        rows = scan(
            db,
            lookback_minutes=settings.COMPENSATION_LOOKBACK_MINUTES,
            dry_run=settings.COMPENSATION_DRY_RUN,
            limit=settings.COMPENSATION_BATCH_SIZE,
        )
        open_reservations = count_open_reservations(db)
        compensation_runs_counter.labels(status="success").inc()
        return {
            'dry_run': settings.COMPENSATION_DRY_RUN,
            'handled': len(rows),
            'rows': rows,
            'open_reservations': open_reservations,
        }
    except Exception:
        compensation_runs_counter.labels(status="failure").inc()
        raise
    finally:
        if should_close:
            db.close()


async def compensation_scheduler_task():
    """Run the compensation sweep on a fixed interval, independent of any request"""
    logger.info(
        f"Starting compensation scheduler task (every {settings.COMPENSATION_INTERVAL_SECONDS}s, "
        f"dry_run={settings.COMPENSATION_DRY_RUN})"
    )

    while True:
        try:
            await asyncio.sleep(settings.COMPENSATION_INTERVAL_SECONDS)
            summary = await asyncio.to_thread(run_compensation_sweep)
            if summary['handled']:
                compensation_logger.info(
                    f"Compensation sweep handled {summary['handled']} requests "
                    f"({summary['open_reservations']} reservations still open)"
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in compensation scheduler: {e}", exc_info=True)
            await asyncio.sleep(60)


def reset_due_cycles(db: Optional[Session] = None, now: Optional[datetime] = None) -> int:
    """Reset every balance whose window has ended

    Reserve and commit reset lazily as well; this keeps idle accounts and the
    projection current.
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        now = now or datetime.now(timezone.utc)
        user_ids = [user_id for (user_id,) in db.query(CreditBalance.user_id).filter(
            CreditBalance.cycle_end <= now
        ).all()]
        db.rollback()

        reset_count = 0
        for user_id in user_ids:
            result = reset_if_due(user_id, db, now=now)
            if result.get('reset'):
                reset_count += 1
        return reset_count
    finally:
        if should_close:
            db.close()


async def cycle_reset_scheduler_task():
    """Background task to advance allocation windows that have ended"""
    logger.info("Starting cycle reset scheduler task...")

    while True:
        try:
            await asyncio.sleep(CYCLE_RESET_INTERVAL_SECONDS)

            reset_count = await asyncio.to_thread(reset_due_cycles)
            if reset_count:
                logger.info(f"Reset credit cycles for {reset_count} users")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in cycle reset scheduler: {e}", exc_info=True)
