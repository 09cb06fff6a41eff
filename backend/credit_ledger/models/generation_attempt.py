"""GenerationAttempt model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
from datetime import datetime, timezone
from credit_ledger.models.base import Base


class GenerationStatus:
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    TERMINAL = (SUCCEEDED, FAILED)


class GenerationAttempt(Base):
    """Job record for a billable generation, reported by the generation workers"""
    __tablename__ = "generation_attempts"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    feature = Column(String(100), nullable=True)
    status = Column(String(20), default=GenerationStatus.STARTED, nullable=False)
    credits_amount = Column(Integer, nullable=True)
    error_stage = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_generation_attempts_status_updated', 'status', 'updated_at'),
    )
