"""Typed, versioned context payloads attached to ledger entries and reservations

Every payload carries a ``kind`` discriminator and a ``version``. Caller
metadata is flattened to scalar values and kept under ``attributes`` so the
shape of the known fields never drifts between code paths.
"""
import json
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Scalar = Union[bool, int, float, str, None]

CONTEXT_VERSION = 1


class _LedgerContextBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = CONTEXT_VERSION


class ReservationContext(_LedgerContextBase):
    kind: Literal["reservation"] = "reservation"
    feature: Optional[str] = None
    attributes: Dict[str, Scalar] = Field(default_factory=dict)


class SettlementContext(_LedgerContextBase):
    kind: Literal["settlement"] = "settlement"
    reason: Optional[str] = None
    failure_reason: Optional[str] = None
    source: str = "caller"  # 'caller', 'settlement_worker', 'compensation'
    attributes: Dict[str, Scalar] = Field(default_factory=dict)


class CycleGrantContext(_LedgerContextBase):
    kind: Literal["cycle_grant"] = "cycle_grant"
    tier: str
    source: str
    cycle_start: datetime
    cycle_end: datetime
    expired_monthly: int = 0


class BillingContext(_LedgerContextBase):
    kind: Literal["billing"] = "billing"
    tier: str
    event_id: Optional[str] = None
    invoice_id: Optional[str] = None
    price_id: Optional[str] = None
    carried_over: int = 0


class PurchaseContext(_LedgerContextBase):
    kind: Literal["purchase"] = "purchase"
    pack: Optional[str] = None
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None


class AdjustmentContext(_LedgerContextBase):
    kind: Literal["adjustment"] = "adjustment"
    reason: Optional[str] = None
    actor: Optional[str] = None


class LegacyUsageContext(_LedgerContextBase):
    kind: Literal["legacy_usage"] = "legacy_usage"
    description: Optional[str] = None
    feature: Optional[str] = None
    attributes: Dict[str, Scalar] = Field(default_factory=dict)


LedgerContext = Annotated[
    Union[
        ReservationContext,
        SettlementContext,
        CycleGrantContext,
        BillingContext,
        PurchaseContext,
        AdjustmentContext,
        LegacyUsageContext,
    ],
    Field(discriminator="kind"),
]

_context_adapter = TypeAdapter(LedgerContext)


def clean_attributes(metadata: Optional[Mapping[str, Any]]) -> Dict[str, Scalar]:
    """Flatten caller metadata to scalar values (nested values are JSON-encoded)"""
    if not metadata:
        return {}
    attributes: Dict[str, Scalar] = {}
    for key, value in metadata.items():
        if value is None or isinstance(value, (bool, int, float, str)):
            attributes[str(key)] = value
        else:
            attributes[str(key)] = json.dumps(value, default=str, sort_keys=True)
    return attributes


def dump_context(context: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    """Serialize a context model for a JSON column"""
    if context is None:
        return None
    return context.model_dump(mode="json")


def parse_context(data: Optional[Mapping[str, Any]]):
    """Parse a stored payload back into its typed model (None when absent)"""
    if not data:
        return None
    return _context_adapter.validate_python(dict(data))
