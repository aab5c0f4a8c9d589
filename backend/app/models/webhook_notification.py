"""WebhookNotification model"""
from sqlalchemy import Column, Integer, String, Text, DateTime
from datetime import datetime, timezone
from app.models.base import Base


class WebhookNotification(Base):
    """Every notification ID the processor has delivered, for duplicate detection and audit"""
    __tablename__ = "webhook_notifications"

    id = Column(Integer, primary_key=True, index=True)
    notification_id = Column(String(255), unique=True, nullable=False, index=True)
    notification_type = Column(String(100), nullable=True, index=True)
    action = Column(String(100), nullable=True)
    resource_id = Column(String(255), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="received")  # 'received', 'processed', 'failed'
    attempts = Column(Integer, nullable=False, default=1)
    raw_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
