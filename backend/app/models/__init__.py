"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.webhook_notification import WebhookNotification
from app.models.idempotency import IdempotencyLock, IdempotentResult
from app.models.subscription import Subscription
from app.models.order import Order
from app.models.status_history import StatusHistory
from app.models.billing_record import BillingRecord
from app.models.reconciliation_issue import ReconciliationIssue

# Export all for convenience
__all__ = [
    "Base", "WebhookNotification", "IdempotencyLock", "IdempotentResult",
    "Subscription", "Order", "StatusHistory", "BillingRecord", "ReconciliationIssue"
]
