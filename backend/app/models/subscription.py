"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Numeric
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Subscription(Base):
    """Recurring pet food subscription billed through the payment processor"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(64), nullable=False, index=True)
    customer_email = Column(String(255), nullable=True, index=True)
    external_reference = Column(String(255), nullable=True, index=True)
    processor_subscription_id = Column(String(255), nullable=True, unique=True, index=True)  # preapproval ID, set on first reconciliation
    status = Column(String(20), nullable=False, default="pending")  # 'pending', 'active', 'paused', 'cancelled'
    amount = Column(Numeric(12, 2), nullable=True)
    # "metadata" is reserved on declarative classes, hence the attribute name
    extra_metadata = Column("metadata", JSON, nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    billing_records = relationship("BillingRecord", back_populates="subscription")
