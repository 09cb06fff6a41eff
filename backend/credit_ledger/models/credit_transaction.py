"""CreditTransaction model"""
from sqlalchemy import Column, Integer, String, ForeignKey, JSON, Index, DateTime, Text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from credit_ledger.models.base import Base


class TransactionType:
    RESERVATION = "reservation"
    USAGE = "usage"
    RELEASE = "release"
    REFUND = "refund"
    SUBSCRIPTION_GRANT = "subscription_grant"
    BONUS = "bonus"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"

    SETTLEMENTS = (USAGE, RELEASE, REFUND)
    GRANTS = (SUBSCRIPTION_GRANT, BONUS, PURCHASE)


class Pool:
    MONTHLY = "monthly"
    BONUS = "bonus"
    MIXED = "mixed"

    @classmethod
    def for_split(cls, monthly_amount: int, bonus_amount: int):
        if monthly_amount and bonus_amount:
            return cls.MIXED
        if monthly_amount:
            return cls.MONTHLY
        if bonus_amount:
            return cls.BONUS
        return None


class CreditTransaction(Base):
    """Append-only credit ledger entry"""
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    request_id = Column(String(255), nullable=True, index=True)
    transaction_type = Column(String(50), nullable=False)

    amount = Column(Integer, nullable=False)  # Signed change to available credits
    monthly_amount = Column(Integer, default=0, nullable=False)
    bonus_amount = Column(Integer, default=0, nullable=False)
    pool = Column(String(20), nullable=True)  # 'monthly', 'bonus', 'mixed'

    # Remaining available credits after this entry
    balance_monthly_after = Column(Integer, nullable=False)
    balance_bonus_after = Column(Integer, nullable=False)

    settles_transaction_id = Column(Integer, ForeignKey("credit_transactions.id", ondelete="SET NULL"), nullable=True)
    external_reference = Column(String(255), nullable=True, index=True)  # Stripe event/invoice, checkout session, etc.
    description = Column(Text, nullable=True)
    context = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    # Relationships
    user = relationship("User", back_populates="credit_transactions")
    settles = relationship("CreditTransaction", remote_side=[id])

    __table_args__ = (
        Index('ix_credit_transactions_user_created', 'user_id', 'created_at'),
        Index('ix_credit_transactions_request_type', 'request_id', 'transaction_type'),
    )

    def __repr__(self):
        return f"<CreditTransaction(id={self.id}, type={self.transaction_type}, amount={self.amount}, request_id={self.request_id})>"
