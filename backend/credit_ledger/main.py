"""Credit ledger service: internal ledger RPC, UI balance reads and background settlement"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError

from credit_ledger.api import credits, internal
from credit_ledger.core import otel
from credit_ledger.core.config import settings
from credit_ledger.core.logging import setup_logging
from credit_ledger.core.security import log_api_access
from credit_ledger.db import redis as redis_module
from credit_ledger.db.session import engine, init_db

setup_logging()
logger = logging.getLogger(__name__)

UNLOGGED_PATHS = ("/health", "/metrics")

# Reason reported for a request field that fails schema validation
VALIDATION_REASONS = {
    "user_id": "missing_user_id",
    "request_id": "missing_request_id",
    "amount": "invalid_amount",
    "credits_amount": "invalid_amount",
    "delta": "invalid_amount",
    "tier": "invalid_tier",
    "cycle_start": "invalid_cycle_window",
    "cycle_end": "invalid_cycle_window",
    "transaction_type": "invalid_transaction_type",
}


def start_background_tasks() -> List[asyncio.Task]:
    """Cycle resets always run; the sweep and the settlement consumer are switchable"""
    from credit_ledger.tasks.scheduler import compensation_scheduler_task, cycle_reset_scheduler_task
    from credit_ledger.tasks.settlement_worker import settlement_worker_task

    loops = [cycle_reset_scheduler_task()]
    if settings.COMPENSATION_ENABLED:
        loops.append(compensation_scheduler_task())
    else:
        logger.warning("Compensation sweep disabled; orphaned reservations will not be settled automatically")
    if settings.SETTLEMENT_QUEUE_ENABLED:
        loops.append(settlement_worker_task())
    else:
        logger.info("Settlement queue disabled; callers settle reservations directly")

    return [asyncio.create_task(loop) for loop in loops]


@asynccontextmanager
async def lifespan(app: FastAPI):
    if otel.initialize_otel() and not otel.setup_otel_logging():
        logger.warning("OpenTelemetry log export unavailable; traces and metrics only")

    # The ledger cannot serve without its store or the settlement queue
    init_db()
    redis_module.ping()
    otel.instrument_sqlalchemy(engine)
    logger.info("Ledger store and Redis reachable")

    tasks = start_background_tasks()
    logger.info(f"Started {len(tasks)} background loops")
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Background loops stopped")


app = FastAPI(
    title="Credit Ledger",
    description="Credit ledger and reservation engine for billable generations",
    version="1.0.0",
    lifespan=lifespan
)
otel.instrument_fastapi(app)

cors_origins = [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    cors_origins += ["http://localhost:3000", "http://127.0.0.1:3000"]

# Browsers only call the UI routes (balance reads and the self-service sync)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(credits.router)
app.include_router(internal.router)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        raise
    finally:
        if request.url.path not in UNLOGGED_PATHS:
            log_api_access(request, request.cookies.get("session_id"), status_code, error)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed input gets the same structured result as a ledger rejection"""
    errors = exc.errors()
    loc = errors[0]["loc"] if errors else ()
    field = str(loc[1]) if len(loc) > 1 else None
    reason = VALIDATION_REASONS.get(field, "invalid_request")
    logger.warning(f"Rejected {request.method} {request.url.path}: {reason} ({field})")
    return JSONResponse(
        status_code=422,
        content={"ok": False, "reason": reason, "field": field, "detail": jsonable_encoder(errors)}
    )


@app.exception_handler(SQLAlchemyError)
async def store_unavailable_handler(request: Request, exc: SQLAlchemyError):
    """The ledger store could not be locked or written"""
    logger.error(f"Ledger store error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=503, content={"ok": False, "error": "Ledger store unavailable"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"ok": False, "error": "Internal server error"})


@app.get("/metrics")
def metrics_endpoint():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
