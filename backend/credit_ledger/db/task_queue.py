"""Settlement event queue on Redis lists, with task metadata in hashes

Generation attempts publish a terminal-state event here; the settlement
worker pops it and drives the matching reservation to commit or release.
The metadata hash tracks status and retries. Events are an accelerator only:
anything lost here is still caught by the compensation sweep.
"""
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from credit_ledger.db.redis import get_async_redis_client, get_redis_client

logger = logging.getLogger(__name__)

QUEUE_KEY_PREFIX = "ledger:queue:"
META_KEY_PREFIX = "ledger:task:"
PROCESSING_SET_KEY = "ledger:processing"

SETTLEMENT_TASK = "generation_settlement"

TASK_META_TTL = 24 * 60 * 60
MAX_RETRY_DELAY_SECONDS = 300


def _meta_key(task_id: str) -> str:
    return f"{META_KEY_PREFIX}{task_id}"


def _queue_key(task_type: str) -> str:
    return f"{QUEUE_KEY_PREFIX}{task_type}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _set_status(task_id: str, status: str, **fields: str) -> None:
    get_redis_client().hset(_meta_key(task_id), mapping={"status": status, **fields})


def enqueue_task(
    task_type: str,
    payload: Dict[str, Any],
    retry_count: int = 0,
    max_retries: int = 3,
    retry_after: Optional[datetime] = None
) -> str:
    """Push a task and record its metadata; returns the new task id"""
    task = {
        "task_id": str(uuid.uuid4()),
        "task_type": task_type,
        "payload": payload,
        "retry_count": retry_count,
        "max_retries": max_retries,
        "created_at": _now(),
    }

    meta = {key: str(value) for key, value in task.items() if key != "payload"}
    meta.update({"payload": json.dumps(payload), "status": "pending"})
    if retry_after is not None:
        meta["retry_after"] = retry_after.isoformat()

    client = get_redis_client()
    client.hset(_meta_key(task["task_id"]), mapping=meta)
    client.expire(_meta_key(task["task_id"]), TASK_META_TTL)
    client.lpush(_queue_key(task_type), json.dumps(task))

    logger.info(f"Queued {task_type} task {task['task_id']} (retry {retry_count}/{max_retries})")
    return task["task_id"]


def publish_settlement_event(request_id: str, user_id: int, status: str, error: Optional[str] = None) -> str:
    """Publish a terminal generation outcome for the settlement worker"""
    return enqueue_task(SETTLEMENT_TASK, {
        "request_id": request_id,
        "user_id": user_id,
        "status": status,
        "error": error,
    })


async def dequeue_task(task_type: str, timeout: int = 5) -> Optional[Dict[str, Any]]:
    """Blocking pop for the worker loop; None on timeout"""
    client = get_async_redis_client()
    if client is None:
        logger.error("No running event loop for the async Redis client")
        return None

    popped = await client.brpop(_queue_key(task_type), timeout=timeout)
    return json.loads(popped[1]) if popped else None


def pop_task_nowait(task_type: str) -> Optional[Dict[str, Any]]:
    """Non-blocking pop used by drain loops and tests"""
    raw = get_redis_client().rpop(_queue_key(task_type))
    return json.loads(raw) if raw else None


def get_task_status(task_id: str) -> Optional[Dict[str, Any]]:
    meta = get_redis_client().hgetall(_meta_key(task_id))
    if not meta:
        return None

    if "payload" in meta:
        meta["payload"] = json.loads(meta["payload"])
    for counter in ("retry_count", "max_retries"):
        if counter in meta:
            meta[counter] = int(meta[counter])
    return meta


def mark_task_processing(task_id: str) -> None:
    _set_status(task_id, "processing", started_at=_now())
    get_redis_client().sadd(PROCESSING_SET_KEY, task_id)


def mark_task_completed(task_id: str, result: Optional[Dict[str, Any]] = None) -> None:
    fields = {"completed_at": _now()}
    if result:
        fields["result"] = json.dumps(result, default=str)
    _set_status(task_id, "completed", **fields)
    get_redis_client().srem(PROCESSING_SET_KEY, task_id)


def mark_task_failed(task_id: str, error: str, retry: bool = True) -> Optional[str]:
    """Fail a task, re-queueing it with exponential backoff while retries remain

    Returns:
        Id of the re-queued task, or None when the failure is final
    """
    client = get_redis_client()
    meta = get_task_status(task_id)
    client.srem(PROCESSING_SET_KEY, task_id)
    if meta is None:
        logger.warning(f"Cannot fail task {task_id}: metadata expired")
        return None

    attempt = meta.get("retry_count", 0)
    max_retries = meta.get("max_retries", 3)

    if not retry or attempt >= max_retries:
        _set_status(task_id, "failed", error=error, failed_at=_now())
        logger.warning(f"{meta['task_type']} task {task_id} failed after {attempt + 1} attempts: {error}")
        return None

    delay = min(MAX_RETRY_DELAY_SECONDS, 2 ** (attempt + 1))
    _set_status(task_id, "retrying", error=error)
    logger.info(f"{meta['task_type']} task {task_id} failed ({error}), retrying in {delay}s")
    return enqueue_task(
        meta["task_type"],
        meta["payload"],
        retry_count=attempt + 1,
        max_retries=max_retries,
        retry_after=datetime.now(timezone.utc) + timedelta(seconds=delay)
    )


def get_processing_tasks() -> List[str]:
    return list(get_redis_client().smembers(PROCESSING_SET_KEY))


def cleanup_stale_tasks(timeout_seconds: int = 3600) -> int:
    """Fail tasks left in processing by a crashed worker; returns how many were dropped"""
    client = get_redis_client()
    now = datetime.now(timezone.utc)
    dropped = 0

    for task_id in get_processing_tasks():
        started_at = client.hget(_meta_key(task_id), "started_at")
        if not started_at:
            continue
        try:
            elapsed = (now - datetime.fromisoformat(started_at)).total_seconds()
        except ValueError:
            elapsed = None

        if elapsed is None or elapsed > timeout_seconds:
            client.srem(PROCESSING_SET_KEY, task_id)
            _set_status(task_id, "failed", error="Abandoned by settlement worker")
            logger.warning(f"Dropped stale settlement task {task_id}")
            dropped += 1

    return dropped
