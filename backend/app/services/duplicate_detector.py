"""Duplicate detection for webhook notification IDs.

The unique constraint on webhook_notifications.notification_id is what makes
check-and-record race safe: of two concurrent inserts for the same ID, exactly
one commits and the other is reported as a duplicate.
"""
import logging
from datetime import timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import StorageError
from app.models.webhook_notification import WebhookNotification
from app.utils.timeutils import utcnow

logger = logging.getLogger("webhook")

STATUS_RECEIVED = "received"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"


class DuplicateOutcome(str, Enum):
    FIRST_SEEN = "first_seen"
    DUPLICATE = "duplicate"


class DuplicateDetector:
    """Records every notification ID and reports redeliveries"""

    def __init__(self, stale_after_seconds: int = 300):
        self.stale_after_seconds = stale_after_seconds

    def check_and_record(
        self,
        db: Session,
        notification_id: str,
        notification_type: Optional[str] = None,
        action: Optional[str] = None,
        resource_id: Optional[str] = None,
        raw_body: Optional[bytes] = None
    ) -> DuplicateOutcome:
        """Record a delivery and report whether it was already accepted.

        A row in 'failed' (or a 'received' row abandoned for longer than the
        stale window) is reclaimed so the redelivery can be processed again.

        Raises:
            StorageError: database unavailable
        """
        try:
            existing = db.query(WebhookNotification).filter(
                WebhookNotification.notification_id == notification_id
            ).first()

            if existing is not None:
                if existing.status == STATUS_PROCESSED:
                    logger.info(f"Notification {notification_id} already processed")
                    return DuplicateOutcome.DUPLICATE
                return self._reclaim(db, existing)

            db.add(WebhookNotification(
                notification_id=notification_id,
                notification_type=notification_type,
                action=action,
                resource_id=resource_id,
                raw_body=raw_body.decode("utf-8", errors="replace") if raw_body else None,
                status=STATUS_RECEIVED,
                attempts=1
            ))
            db.commit()
            return DuplicateOutcome.FIRST_SEEN
        except IntegrityError:
            db.rollback()
            logger.info(f"Notification {notification_id} recorded concurrently by another delivery")
            return DuplicateOutcome.DUPLICATE
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Storage error recording notification {notification_id}: {e}")
            raise StorageError(f"Could not record notification: {e}", stage="dedupe")

    def _reclaim(self, db: Session, existing: WebhookNotification) -> DuplicateOutcome:
        now = utcnow()
        stale_cutoff = now - timedelta(seconds=self.stale_after_seconds)
        claimed = db.query(WebhookNotification).filter(
            WebhookNotification.id == existing.id,
            or_(
                WebhookNotification.status == STATUS_FAILED,
                and_(
                    WebhookNotification.status == STATUS_RECEIVED,
                    WebhookNotification.received_at < stale_cutoff
                )
            )
        ).update({
            WebhookNotification.status: STATUS_RECEIVED,
            WebhookNotification.received_at: now,
            WebhookNotification.attempts: WebhookNotification.attempts + 1,
            WebhookNotification.error_message: None
        }, synchronize_session=False)
        db.commit()

        if claimed == 1:
            logger.info(f"Notification {existing.notification_id} redelivered after failure, reprocessing")
            return DuplicateOutcome.FIRST_SEEN
        logger.info(f"Notification {existing.notification_id} is already being processed")
        return DuplicateOutcome.DUPLICATE

    def mark_outcome(self, db: Session, notification_id: str, success: bool, error: Optional[str] = None) -> None:
        """Finalize a notification as processed or failed

        Raises:
            StorageError: database unavailable
        """
        try:
            db.query(WebhookNotification).filter(
                WebhookNotification.notification_id == notification_id
            ).update({
                WebhookNotification.status: STATUS_PROCESSED if success else STATUS_FAILED,
                WebhookNotification.error_message: None if success else (error or "unknown error"),
                WebhookNotification.processed_at: utcnow()
            }, synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Storage error finalizing notification {notification_id}: {e}")
            raise StorageError(f"Could not finalize notification: {e}", stage="complete")

    def purge_older_than(self, db: Session, days: int) -> int:
        """Delete notification rows past the retention window, returning the count

        Rows still in 'received' are included: at this age the worker that
        claimed them is long gone and no redelivery will reclaim them.
        """
        cutoff = utcnow() - timedelta(days=days)
        deleted = db.query(WebhookNotification).filter(
            WebhookNotification.received_at < cutoff
        ).delete(synchronize_session=False)
        db.commit()
        return deleted
