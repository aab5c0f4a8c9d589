"""Apply the processor's authoritative state to local subscriptions and orders"""
import logging
from dataclasses import asdict, dataclass
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import ReconcileError
from app.core.metrics import reconcile_conflicts_counter
from app.models.billing_record import BillingRecord
from app.models.order import Order
from app.models.reconciliation_issue import ReconciliationIssue
from app.models.status_history import StatusHistory
from app.models.subscription import Subscription
from app.services.entity_resolver import (
    META_EXTERNAL_REFERENCE, META_PAYMENT_ID, ORDER, SUBSCRIPTION
)
from app.services.processor_client import ProcessorResource
from app.utils.timeutils import utcnow

logger = logging.getLogger("reconcile")

# Preapproval (subscription) status -> local subscription status
SUBSCRIPTION_STATUS_MAP = {
    "authorized": "active",
    "paused": "paused",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "pending": "pending",
    "expired": "cancelled",
}

# Payment status -> local subscription status; other payment statuses leave it alone
PAYMENT_SUBSCRIPTION_STATUS_MAP = {
    "approved": "active",
}

# Payment status -> local order status
ORDER_STATUS_MAP = {
    "approved": "confirmed",
    "paid": "confirmed",
    "rejected": "cancelled",
    "cancelled": "cancelled",
    "refunded": "cancelled",
    "charged_back": "cancelled",
    "pending": "pending_payment",
    "in_process": "pending_payment",
    "authorized": "pending_payment",
}


@dataclass
class ReconcileResult:
    entity_type: str
    entity_id: int
    previous_status: str
    new_status: str
    changed: bool
    conflict: Optional[str] = None
    billing_recorded: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def map_status(entity_type: str, resource: ProcessorResource) -> Optional[str]:
    """Local status for a processor state, or None when the status is unknown"""
    status = (resource.status or "").lower()
    if entity_type == ORDER:
        return ORDER_STATUS_MAP.get(status)
    if resource.is_payment:
        return PAYMENT_SUBSCRIPTION_STATUS_MAP.get(status)
    return SUBSCRIPTION_STATUS_MAP.get(status)


def check_transition(entity_type: str, previous: str, target: str, allow_resume: bool = False) -> Optional[str]:
    """Reason the transition breaks monotonicity, or None when it is allowed"""
    if previous == target:
        return None
    if entity_type == SUBSCRIPTION:
        if previous == "cancelled" and not allow_resume:
            return f"cancelled subscription cannot move to {target} without a resume event"
        if previous in ("active", "paused") and target == "pending":
            return f"{previous} subscription cannot regress to pending"
        return None
    if previous == "cancelled":
        return f"cancelled order cannot move to {target}"
    if previous == "confirmed" and target == "pending_payment":
        return "confirmed order cannot regress to pending_payment"
    return None


class StateReconciler:
    """Computes and applies status transitions with their audit trail"""

    def reconcile(
        self,
        db: Session,
        entity: Union[Subscription, Order],
        processor_state: ProcessorResource,
        cause: str,
        allow_resume: bool = False,
        notification_id: Optional[str] = None
    ) -> ReconcileResult:
        """Bring `entity` in line with `processor_state`.

        The status update, its StatusHistory row, any billing record and any
        conflict report are committed in one transaction.

        Raises:
            ReconcileError: the transaction failed and was rolled back
        """
        entity_type = SUBSCRIPTION if isinstance(entity, Subscription) else ORDER
        previous = entity.status
        target = map_status(entity_type, processor_state)

        conflict = None
        if target is None:
            logger.info(
                f"Processor status '{processor_state.status}' for {processor_state.kind} {processor_state.id} "
                f"has no {entity_type} mapping; leaving {entity_type} {entity.id} at {previous}"
            )
        else:
            conflict = check_transition(entity_type, previous, target, allow_resume)

        changed = target is not None and conflict is None and target != previous
        new_status = target if changed else previous
        record_billing = (
            entity_type == SUBSCRIPTION and processor_state.is_payment and bool(processor_state.payment_id)
        )

        result = ReconcileResult(
            entity_type=entity_type,
            entity_id=entity.id,
            previous_status=previous,
            new_status=new_status,
            changed=changed,
            conflict=conflict
        )

        try:
            linked = self._link_keys(db, entity, entity_type, processor_state)
            if not (changed or record_billing or conflict or linked):
                logger.info(f"{entity_type} {entity.id} already {previous}, nothing to apply")
                return result

            if changed:
                self._apply(entity, entity_type, new_status, processor_state)
                db.add(StatusHistory(
                    entity_type=entity_type,
                    entity_id=entity.id,
                    previous_status=previous,
                    new_status=new_status,
                    cause=cause
                ))
            if record_billing:
                result.billing_recorded = self._record_billing(db, entity, processor_state)
            if conflict:
                reconcile_conflicts_counter.labels(entity_type=entity_type).inc()
                logger.warning(f"Rejected transition for {entity_type} {entity.id}: {conflict} ({cause})")
                db.add(ReconciliationIssue(
                    kind="status_conflict",
                    notification_id=notification_id,
                    notification_type=processor_state.kind,
                    resource_id=processor_state.id,
                    entity_type=entity_type,
                    entity_id=entity.id,
                    keys={"processor_status": processor_state.status, "attempted_status": target},
                    detail=conflict
                ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Reconciliation of {entity_type} {entity.id} rolled back: {e}")
            raise ReconcileError(f"Could not apply reconciliation for {entity_type} {entity.id}: {e}")

        if changed:
            logger.info(f"{entity_type} {entity.id}: {previous} -> {new_status} ({cause})")
        elif linked:
            logger.info(f"{entity_type} {entity.id}: stored correlation keys from {processor_state.kind} {processor_state.id}")
        return result

    def _apply(self, entity, entity_type: str, new_status: str, resource: ProcessorResource) -> None:
        now = utcnow()
        entity.status = new_status
        entity.updated_at = now

        if entity_type == ORDER:
            entity.payment_status = resource.status
            if new_status == "confirmed":
                entity.confirmed_at = now
            return

        if resource.next_payment_date:
            entity.next_billing_date = resource.next_payment_date

    def _link_keys(self, db: Session, entity, entity_type: str, resource: ProcessorResource) -> bool:
        """Store correlation keys learned from `resource` so later notifications resolve directly.

        Runs on every resolved reconciliation and only touches attributes whose
        value differs. Returns True when anything was written.
        """
        linked = False

        if entity_type == ORDER:
            if not entity.payment_reference and resource.payment_id:
                entity.payment_reference = resource.payment_id
                linked = True
            return linked

        if not entity.processor_subscription_id and resource.preapproval_id:
            taken = db.query(Subscription.id).filter(
                Subscription.processor_subscription_id == resource.preapproval_id,
                Subscription.id != entity.id
            ).first()
            if taken is None:
                entity.processor_subscription_id = resource.preapproval_id
                linked = True
            else:
                logger.warning(
                    f"Preapproval {resource.preapproval_id} already linked to subscription {taken.id}; "
                    f"not linking subscription {entity.id}"
                )

        metadata = dict(entity.extra_metadata or {})
        if resource.external_reference and resource.external_reference != entity.external_reference:
            metadata[META_EXTERNAL_REFERENCE] = resource.external_reference
        if resource.is_payment and resource.payment_id:
            metadata[META_PAYMENT_ID] = resource.payment_id
        if metadata != (entity.extra_metadata or {}):
            entity.extra_metadata = metadata
            linked = True
        return linked

    def _record_billing(self, db: Session, subscription: Subscription, resource: ProcessorResource) -> bool:
        """Insert the billing row for this payment once; later calls only update its status"""
        existing = db.query(BillingRecord).filter(
            BillingRecord.processor_payment_id == resource.payment_id
        ).first()
        if existing is not None:
            if existing.status != resource.status:
                logger.info(f"Billing record for payment {resource.payment_id}: {existing.status} -> {resource.status}")
                existing.status = resource.status
            return False

        db.add(BillingRecord(
            subscription_id=subscription.id,
            processor_payment_id=resource.payment_id,
            amount=resource.amount,
            currency=resource.currency,
            status=resource.status
        ))
        return True
