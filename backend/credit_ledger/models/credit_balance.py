"""CreditBalance model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from credit_ledger.models.base import Base


class CycleSource:
    """How the allocation window advances"""
    PROFILE = "profile"  # Fixed monthly period since signup
    SUBSCRIPTION = "subscription"  # Rolls forward from the billing period end


class CreditBalance(Base):
    """Per-user credit pools, in-flight holds and the current allocation window"""
    __tablename__ = "credit_balances"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)

    # Monthly pool
    monthly_allowance = Column(Integer, default=0, nullable=False)
    monthly_used = Column(Integer, default=0, nullable=False)
    reserved_monthly = Column(Integer, default=0, nullable=False)

    # Bonus pool (purchases, grants, carried-over credits); never reset by the cycle
    bonus_total = Column(Integer, default=0, nullable=False)
    bonus_used = Column(Integer, default=0, nullable=False)
    reserved_bonus = Column(Integer, default=0, nullable=False)
    bonus_granted = Column(Boolean, default=False, nullable=False)  # First-subscription bonus applied

    tier = Column(String(50), default="basic", nullable=False)

    # Allocation window
    cycle_start = Column(DateTime(timezone=True), nullable=False)
    cycle_end = Column(DateTime(timezone=True), nullable=False)
    cycle_source = Column(String(20), default=CycleSource.PROFILE, nullable=False)
    cycle_anchor = Column(DateTime(timezone=True), nullable=True)  # Billing anchor of subscription windows
    last_reset_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="credit_balance")

    # Pool invariants; the unmetered tier may exceed the monthly allowance
    __table_args__ = (
        CheckConstraint(
            'monthly_used >= 0 AND reserved_monthly >= 0 AND bonus_used >= 0 AND reserved_bonus >= 0',
            name='ck_credit_balances_non_negative'
        ),
        CheckConstraint('bonus_used + reserved_bonus <= bonus_total', name='ck_credit_balances_bonus_pool'),
    )

    @property
    def available_monthly(self) -> int:
        return max(0, self.monthly_allowance - self.monthly_used - self.reserved_monthly)

    @property
    def available_bonus(self) -> int:
        return max(0, self.bonus_total - self.bonus_used - self.reserved_bonus)

    def __repr__(self):
        return (
            f"<CreditBalance(user_id={self.user_id}, tier={self.tier}, "
            f"monthly={self.monthly_used}+{self.reserved_monthly}/{self.monthly_allowance}, "
            f"bonus={self.bonus_used}+{self.reserved_bonus}/{self.bonus_total})>"
        )
