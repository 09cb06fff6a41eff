"""CreditReservation model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Index, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from credit_ledger.models.base import Base


class ReservationStatus:
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"


class CreditReservation(Base):
    """Idempotency-keyed hold against a user's available credits"""
    __tablename__ = "credit_reservations"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Split across pools; magnitudes, monthly consumed first
    amount = Column(Integer, nullable=False)
    monthly_amount = Column(Integer, default=0, nullable=False)
    bonus_amount = Column(Integer, default=0, nullable=False)

    status = Column(String(20), default=ReservationStatus.RESERVED, nullable=False)  # 'reserved', 'committed', 'released'
    feature = Column(String(100), nullable=True)
    context = Column(JSON, nullable=True)  # Typed ledger context (see schemas.ledger_context)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    user = relationship("User", back_populates="credit_reservations")

    __table_args__ = (
        Index('ix_credit_reservations_status_created', 'status', 'created_at'),
        CheckConstraint("status IN ('reserved', 'committed', 'released')", name='ck_credit_reservations_status'),
        CheckConstraint(
            'amount > 0 AND monthly_amount >= 0 AND bonus_amount >= 0 AND monthly_amount + bonus_amount = amount',
            name='ck_credit_reservations_split'
        ),
    )

    def __repr__(self):
        return f"<CreditReservation(request_id={self.request_id}, status={self.status}, amount={self.amount})>"
