"""Redis access: UI session lookup and the settlement event queue

Clients are created on first use so tests can swap in fakeredis before any
connection is attempted.
"""
import asyncio
import logging
from typing import Optional

import redis
import redis.asyncio as aioredis

from credit_ledger.core.config import settings

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"

_client: Optional[redis.Redis] = None
_async_client: Optional[aioredis.Redis] = None
_async_client_loop: Optional[asyncio.AbstractEventLoop] = None


def get_redis_client() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_async_redis_client() -> Optional[aioredis.Redis]:
    """Async client for the worker's blocking pops, recreated per event loop"""
    global _async_client, _async_client_loop

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None

    if _async_client is None or _async_client_loop is not loop:
        _async_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True, max_connections=10)
        _async_client_loop = loop
    return _async_client


def get_session(session_id: str) -> Optional[int]:
    """User id for a session issued by the identity service, None when unknown or expired"""
    user_id = get_redis_client().get(f"{SESSION_KEY_PREFIX}{session_id}")
    if not user_id:
        return None
    try:
        return int(user_id)
    except ValueError:
        logger.warning(f"Session {session_id[:8]}... maps to a non-numeric user id")
        return None


def ping() -> bool:
    return bool(get_redis_client().ping())
