"""CreditMonitoringEvent model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON
from datetime import datetime, timezone
from credit_ledger.models.base import Base


class CreditMonitoringEvent(Base):
    """Audit trail of compensation sweep decisions"""
    __tablename__ = "credit_monitoring_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    request_id = Column(String(255), nullable=True, index=True)
    feature = Column(String(100), nullable=True)
    event_type = Column(String(50), nullable=False)  # 'released', 'refunded', 'would_release', ...
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
