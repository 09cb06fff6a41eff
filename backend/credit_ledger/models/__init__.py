"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from credit_ledger.models.base import Base
from credit_ledger.models.user import User
from credit_ledger.models.credit_balance import CreditBalance, CycleSource
from credit_ledger.models.credit_reservation import CreditReservation, ReservationStatus
from credit_ledger.models.credit_transaction import CreditTransaction, TransactionType, Pool
from credit_ledger.models.credit_balance_projection import CreditBalanceProjection
from credit_ledger.models.generation_attempt import GenerationAttempt, GenerationStatus
from credit_ledger.models.credit_monitoring_event import CreditMonitoringEvent

# Export all for convenience
__all__ = [
    "Base", "User", "CreditBalance", "CycleSource", "CreditReservation", "ReservationStatus",
    "CreditTransaction", "TransactionType", "Pool", "CreditBalanceProjection",
    "GenerationAttempt", "GenerationStatus", "CreditMonitoringEvent"
]
