"""Distributed lock and cached result models for the idempotency coordinator"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from datetime import datetime, timezone
from app.models.base import Base


class IdempotencyLock(Base):
    """At most one live row per lock_key; the unique constraint is the mutex"""
    __tablename__ = "idempotency_locks"

    id = Column(Integer, primary_key=True, index=True)
    lock_key = Column(String(255), unique=True, nullable=False, index=True)
    owner = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)


class IdempotentResult(Base):
    """Result of a keyed operation that completed successfully"""
    __tablename__ = "idempotent_results"

    id = Column(Integer, primary_key=True, index=True)
    operation_key = Column(String(255), unique=True, nullable=False, index=True)
    result_data = Column(JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
