"""BillingRecord model"""
from sqlalchemy import Column, Integer, String, DateTime, Numeric, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class BillingRecord(Base):
    """One row per processor payment charged against a subscription"""
    __tablename__ = "billing_records"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    processor_payment_id = Column(String(255), unique=True, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(10), nullable=True)
    status = Column(String(30), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    subscription = relationship("Subscription", back_populates="billing_records")
