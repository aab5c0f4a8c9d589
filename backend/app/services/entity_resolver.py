"""Match processor notifications to local subscriptions and orders.

The processor's external_reference is unreliable in practice, so lookups walk
a fixed chain of strategies ordered by decreasing confidence and stop at the
first hit:

    1. external_reference  - entity's own correlation field equals the reference
    2. metadata_reference  - reference (or payment ID) stashed in the entity's metadata
    3. processor_id        - processor-side preapproval / payment ID
    4. user_product        - newest pending/active subscription for (user, product)
    5. payer_email_window  - newest pending subscription for the payer's email,
                             created within +/- 10 minutes of the processor resource

Orders (one-off purchases) only support strategies 1 and 3. A miss returns
None; callers must never create an entity to fill the gap.
"""
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import StorageError
from app.core.metrics import resolution_counter
from app.models.order import Order
from app.models.subscription import Subscription
from app.schemas.webhooks import Notification, NotificationType, ResolutionHints
from app.services.processor_client import ProcessorResource

logger = logging.getLogger("resolver")

SUBSCRIPTION = "subscription"
ORDER = "order"

# Keys the reconciler stashes in Subscription.metadata
META_EXTERNAL_REFERENCE = "processor_external_reference"
META_PAYMENT_EXTERNAL_REFERENCE = "payment_external_reference"
META_PAYMENT_ID = "processor_payment_id"

# Bare order IDs as checkout sends them; nine digits always fit an INTEGER column
ORDER_ID_PATTERN = re.compile(r"[0-9]{1,9}")


class ResolutionMethod(str, Enum):
    EXTERNAL_REFERENCE = "external_reference"
    METADATA_REFERENCE = "metadata_reference"
    PROCESSOR_ID = "processor_id"
    USER_PRODUCT = "user_product"
    PAYER_EMAIL_WINDOW = "payer_email_window"

    @property
    def rank(self) -> int:
        """1 is the most trustworthy"""
        return _RANKS[self]


_RANKS = {
    ResolutionMethod.EXTERNAL_REFERENCE: 1,
    ResolutionMethod.METADATA_REFERENCE: 2,
    ResolutionMethod.PROCESSOR_ID: 3,
    ResolutionMethod.USER_PRODUCT: 4,
    ResolutionMethod.PAYER_EMAIL_WINDOW: 5,
}


@dataclass
class Resolution:
    entity: object
    entity_type: str
    method: ResolutionMethod


def parse_external_reference(reference: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Extract (user_id, product_id) from references shaped SUB-{user}-{product}-{suffix}"""
    if not reference or "-" not in reference:
        return None, None
    parts = reference.split("-")
    if len(parts) >= 4 and parts[0] == "SUB" and parts[1] and parts[2]:
        return parts[1], parts[2]
    return None, None


def hints_from_resource(
    resource: ProcessorResource,
    user_id: Optional[str] = None,
    product_id: Optional[str] = None,
    payer_email: Optional[str] = None
) -> ResolutionHints:
    """Collect correlation keys from a fetched processor resource plus caller hints"""
    ref_user, ref_product = parse_external_reference(resource.external_reference)
    metadata = resource.metadata or {}
    return ResolutionHints(
        external_reference=resource.external_reference,
        processor_subscription_id=resource.preapproval_id,
        processor_payment_id=resource.payment_id if resource.is_payment else None,
        user_id=user_id or (str(metadata["user_id"]) if metadata.get("user_id") else None) or ref_user,
        product_id=product_id or (str(metadata["product_id"]) if metadata.get("product_id") else None) or ref_product,
        payer_email=payer_email or resource.payer_email,
        resource_created_at=resource.date_created
    )


Finder = Callable[[Session, ResolutionHints], Optional[object]]


class EntityResolver:
    """Single, ordered implementation of notification-to-entity matching"""

    def __init__(self, email_window_minutes: int = 10):
        self.email_window = timedelta(minutes=email_window_minutes)

    def strategies_for(self, notification_type: NotificationType) -> List[Tuple[ResolutionMethod, str, Finder]]:
        subscription_chain = [
            (ResolutionMethod.EXTERNAL_REFERENCE, SUBSCRIPTION, self._subscription_by_reference),
            (ResolutionMethod.METADATA_REFERENCE, SUBSCRIPTION, self._subscription_by_metadata),
            (ResolutionMethod.PROCESSOR_ID, SUBSCRIPTION, self._subscription_by_processor_id),
        ]
        fallbacks = [
            (ResolutionMethod.USER_PRODUCT, SUBSCRIPTION, self._subscription_by_user_product),
            (ResolutionMethod.PAYER_EMAIL_WINDOW, SUBSCRIPTION, self._subscription_by_payer_email),
        ]
        if notification_type == NotificationType.PAYMENT:
            # A plain payment may belong to a one-off order; try those before the weak fallbacks
            return subscription_chain + [
                (ResolutionMethod.EXTERNAL_REFERENCE, ORDER, self._order_by_reference),
                (ResolutionMethod.PROCESSOR_ID, ORDER, self._order_by_payment_reference),
            ] + fallbacks
        return subscription_chain + fallbacks

    def resolve(self, db: Session, notification: Notification, hints: ResolutionHints) -> Optional[Resolution]:
        """Walk the strategy chain and return the first match, or None

        Raises:
            StorageError: a lookup failed; the delivery should be retried
        """
        for method, entity_type, finder in self.strategies_for(notification.type):
            try:
                entity = finder(db, hints)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Lookup {method.value} failed for notification {notification.id}: {e}")
                raise StorageError(f"Could not look up {entity_type} via {method.value}: {e}", stage="resolve")
            if entity is not None:
                resolution_counter.labels(method=method.value).inc()
                log = logger.warning if method.rank >= 4 else logger.info
                log(
                    f"Notification {notification.id} ({notification.type.value} {notification.resource_id}) "
                    f"resolved to {entity_type} {entity.id} via {method.value}"
                )
                return Resolution(entity=entity, entity_type=entity_type, method=method)

        resolution_counter.labels(method="none").inc()
        logger.warning(
            f"Notification {notification.id} ({notification.type.value} {notification.resource_id}) "
            f"matched no local entity; keys tried: {hints.for_log()}"
        )
        return None

    # Subscription strategies

    def _subscription_by_reference(self, db: Session, hints: ResolutionHints) -> Optional[Subscription]:
        if not hints.external_reference:
            return None
        return db.query(Subscription).filter(
            Subscription.external_reference == hints.external_reference
        ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()

    def _subscription_by_metadata(self, db: Session, hints: ResolutionHints) -> Optional[Subscription]:
        conditions = []
        if hints.external_reference:
            conditions.append(
                Subscription.extra_metadata[META_EXTERNAL_REFERENCE].as_string() == hints.external_reference
            )
            conditions.append(
                Subscription.extra_metadata[META_PAYMENT_EXTERNAL_REFERENCE].as_string() == hints.external_reference
            )
        if hints.processor_payment_id:
            conditions.append(
                Subscription.extra_metadata[META_PAYMENT_ID].as_string() == hints.processor_payment_id
            )
        if not conditions:
            return None
        return db.query(Subscription).filter(
            Subscription.extra_metadata.isnot(None),
            or_(*conditions)
        ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()

    def _subscription_by_processor_id(self, db: Session, hints: ResolutionHints) -> Optional[Subscription]:
        if not hints.processor_subscription_id:
            return None
        return db.query(Subscription).filter(
            Subscription.processor_subscription_id == hints.processor_subscription_id
        ).first()

    def _subscription_by_user_product(self, db: Session, hints: ResolutionHints) -> Optional[Subscription]:
        if not (hints.user_id and hints.product_id):
            return None
        return db.query(Subscription).filter(
            Subscription.user_id == hints.user_id,
            Subscription.product_id == hints.product_id,
            Subscription.status.in_(["pending", "active"])
        ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()

    def _subscription_by_payer_email(self, db: Session, hints: ResolutionHints) -> Optional[Subscription]:
        if not (hints.payer_email and hints.resource_created_at):
            return None
        return db.query(Subscription).filter(
            Subscription.customer_email == hints.payer_email,
            Subscription.status == "pending",
            Subscription.created_at >= hints.resource_created_at - self.email_window,
            Subscription.created_at <= hints.resource_created_at + self.email_window
        ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()

    # Order strategies

    def _order_by_reference(self, db: Session, hints: ResolutionHints) -> Optional[Order]:
        if not hints.external_reference:
            return None
        order = db.query(Order).filter(
            Order.external_reference == hints.external_reference
        ).order_by(Order.created_at.desc(), Order.id.desc()).first()
        if order is None and ORDER_ID_PATTERN.fullmatch(hints.external_reference):
            # Checkout sends the bare order ID as reference when none was generated
            order = db.query(Order).filter(Order.id == int(hints.external_reference)).first()
        return order

    def _order_by_payment_reference(self, db: Session, hints: ResolutionHints) -> Optional[Order]:
        if not hints.processor_payment_id:
            return None
        return db.query(Order).filter(
            Order.payment_reference == hints.processor_payment_id
        ).first()
