"""ReconciliationIssue model"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Boolean
from datetime import datetime, timezone
from app.models.base import Base


class ReconciliationIssue(Base):
    """Review queue for notifications an operator has to look at

    kind is 'resolution_miss' (no local entity matched) or 'status_conflict'
    (a transition rejected by the monotonicity rule).
    """
    __tablename__ = "reconciliation_issues"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(30), nullable=False, index=True)
    notification_id = Column(String(255), nullable=True, index=True)
    notification_type = Column(String(100), nullable=True)
    resource_id = Column(String(255), nullable=True)
    entity_type = Column(String(20), nullable=True)
    entity_id = Column(Integer, nullable=True)
    keys = Column(JSON, nullable=True)  # correlation keys that were tried
    detail = Column(Text, nullable=True)
    resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
