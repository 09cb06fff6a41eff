"""Pydantic schemas for the credit ledger RPC surface

Identifiers and amounts are optional at the schema level so the ledger can
answer missing values with its own structured reasons.
"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel


class ReserveRequest(BaseModel):
    user_id: Optional[int] = None
    request_id: Optional[str] = None
    amount: Optional[int] = None
    feature: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ConsumeRequest(ReserveRequest):
    description: Optional[str] = None


class CommitRequest(BaseModel):
    user_id: Optional[int] = None
    request_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ReleaseRequest(CommitRequest):
    reason: Optional[str] = None


class RefundRequest(CommitRequest):
    reason: Optional[str] = None


class ResetCycleRequest(BaseModel):
    user_id: Optional[int] = None


class SubscriptionStateRequest(BaseModel):
    user_id: int
    tier: str  # 'basic', 'starter', 'creator', 'professional'
    cycle_start: datetime
    cycle_end: datetime
    event_id: Optional[str] = None
    invoice_id: Optional[str] = None
    price_id: Optional[str] = None
    reset_usage: bool = False


class GrantRequest(BaseModel):
    user_id: int
    amount: int
    transaction_type: str = "purchase"  # 'purchase' or 'bonus'
    external_reference: Optional[str] = None
    reason: Optional[str] = None
    pack: Optional[str] = None
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    actor: Optional[str] = None


class AdjustRequest(BaseModel):
    user_id: int
    delta: int
    reason: Optional[str] = None
    actor: Optional[str] = None


class CompensationScanRequest(BaseModel):
    user_id: Optional[int] = None
    lookback_minutes: int = 60
    dry_run: Optional[bool] = None  # Defaults to COMPENSATION_DRY_RUN
    limit: Optional[int] = None
    stale_minutes: Optional[int] = None  # Defaults to COMPENSATION_STALE_MINUTES


class GenerationStartedRequest(BaseModel):
    user_id: Optional[int] = None
    request_id: Optional[str] = None
    feature: Optional[str] = None
    credits_amount: Optional[int] = None


class GenerationOutcomeRequest(BaseModel):
    status: Literal["succeeded", "failed"]
    user_id: Optional[int] = None
    error_stage: Optional[str] = None
    error_message: Optional[str] = None


class TierChangeRequest(BaseModel):
    user_id: int
    tier: str
