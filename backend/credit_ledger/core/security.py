"""Request guards for the two ledger surfaces

The UI read path trusts sessions issued by the identity service (looked up
in Redis); the internal RPC surface trusts a shared secret header.
"""
import json
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi import Header, HTTPException, Request

from credit_ledger.core.config import settings
from credit_ledger.core.logging import api_access_logger, security_logger
from credit_ledger.db.redis import get_session


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else "unknown"


def require_auth(request: Request) -> int:
    """Dependency: user id of the session cookie, 401 otherwise"""
    session_id = request.cookies.get("session_id")
    if not session_id:
        raise HTTPException(401, "Not authenticated")

    user_id = get_session(session_id)
    if user_id is None:
        raise HTTPException(401, "Session expired")
    return user_id


def require_internal_key(
    request: Request,
    x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key")
) -> str:
    """Dependency: shared secret of generation workers, billing sync and admin tools"""
    expected = settings.INTERNAL_API_KEY
    if expected and x_internal_api_key and secrets.compare_digest(x_internal_api_key, expected):
        return x_internal_api_key

    security_logger.warning(
        f"Rejected internal ledger call {request.method} {request.url.path} from {_client_ip(request)} "
        f"({'no key' if not x_internal_api_key else 'wrong key'})"
    )
    raise HTTPException(401, "Invalid internal API key")


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
) -> None:
    """One structured access line per request; failures at WARNING"""
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "status_code": status_code,
        "client_ip": _client_ip(request),
        "internal": request.url.path.startswith("/api/internal/"),
        "session": f"{session_id[:8]}..." if session_id else None,
        "error": error,
    }

    level = api_access_logger.warning if error or status_code >= 400 else api_access_logger.info
    level(f"API Access: {json.dumps(entry)}")
