"""CreditBalanceProjection model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from datetime import datetime, timezone
from credit_ledger.models.base import Base


class CreditBalanceProjection(Base):
    """Read-optimized available balance for the UI

    Written only by projection_service.sync_balance_projection.
    """
    __tablename__ = "credit_balance_projections"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    available = Column(Integer, default=0, nullable=False)
    tier = Column(String(50), nullable=True)
    cycle_end = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
