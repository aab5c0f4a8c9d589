"""StatusHistory model"""
from sqlalchemy import Column, Integer, String, DateTime, Text
from datetime import datetime, timezone
from app.models.base import Base


class StatusHistory(Base):
    """Append-only audit trail of status transitions applied by reconciliation"""
    __tablename__ = "status_history"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(20), nullable=False, index=True)  # 'subscription', 'order'
    entity_id = Column(Integer, nullable=False, index=True)
    previous_status = Column(String(30), nullable=True)
    new_status = Column(String(30), nullable=False)
    cause = Column(Text, nullable=False)  # notification ID and resolution method
    applied_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
