"""Order model"""
from sqlalchemy import Column, Integer, String, DateTime, Numeric
from datetime import datetime, timezone
from app.models.base import Base


class Order(Base):
    """One-off purchase paid through the payment processor"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    customer_email = Column(String(255), nullable=True)
    external_reference = Column(String(255), nullable=True, index=True)
    payment_reference = Column(String(255), nullable=True, index=True)  # processor payment or preference ID
    status = Column(String(20), nullable=False, default="pending_payment")  # 'pending_payment', 'confirmed', 'cancelled'
    payment_status = Column(String(30), nullable=True)  # raw processor payment status
    total = Column(Numeric(12, 2), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
