"""Entity resolution tests - strategy chain ordering and fallbacks"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import StorageError
from app.models.subscription import Subscription
from app.schemas.webhooks import Notification, NotificationType, ResolutionHints
from app.services.entity_resolver import (
    ORDER, SUBSCRIPTION, EntityResolver, ResolutionMethod,
    hints_from_resource, parse_external_reference
)
from app.utils.timeutils import utcnow


def notification(notification_type=NotificationType.PAYMENT, resource_id="p1"):
    return Notification(
        id="w1",
        type=notification_type,
        raw_type=notification_type.value,
        action="payment.created",
        resource_id=resource_id,
        raw_body=b"{}",
        received_at=utcnow()
    )


@pytest.fixture
def resolver():
    return EntityResolver(email_window_minutes=10)


@pytest.mark.critical
class TestResolutionChain:

    def test_external_reference_match(self, resolver, db_session, make_subscription):
        subscription = make_subscription(external_reference="SUB-u1-p1-abc")

        resolution = resolver.resolve(
            db_session, notification(), ResolutionHints(external_reference="SUB-u1-p1-abc")
        )

        assert resolution.entity.id == subscription.id
        assert resolution.entity_type == SUBSCRIPTION
        assert resolution.method == ResolutionMethod.EXTERNAL_REFERENCE
        assert resolution.method.rank == 1

    def test_metadata_reference_match(self, resolver, db_session, make_subscription):
        """Reference differs from the original but was stashed in metadata"""
        subscription = make_subscription(
            external_reference="SUB-u1-p1-original",
            extra_metadata={"processor_external_reference": "MP-REF-9"}
        )

        resolution = resolver.resolve(
            db_session, notification(), ResolutionHints(external_reference="MP-REF-9")
        )

        assert resolution.entity.id == subscription.id
        assert resolution.method == ResolutionMethod.METADATA_REFERENCE

    def test_metadata_payment_id_match(self, resolver, db_session, make_subscription):
        subscription = make_subscription(extra_metadata={"processor_payment_id": "p77"})

        resolution = resolver.resolve(
            db_session, notification(), ResolutionHints(processor_payment_id="p77")
        )

        assert resolution.entity.id == subscription.id
        assert resolution.method == ResolutionMethod.METADATA_REFERENCE

    def test_processor_id_only_resolves_with_method_three(self, resolver, db_session, make_subscription):
        subscription = make_subscription(external_reference="SUB-u9-p9-x", processor_subscription_id="pre_1")

        resolution = resolver.resolve(
            db_session,
            notification(NotificationType.SUBSCRIPTION_PREAPPROVAL, "pre_1"),
            ResolutionHints(external_reference="does-not-match", processor_subscription_id="pre_1")
        )

        assert resolution is not None
        assert resolution.entity.id == subscription.id
        assert resolution.method == ResolutionMethod.PROCESSOR_ID
        assert resolution.method.rank == 3

    def test_stronger_strategy_wins(self, resolver, db_session, make_subscription):
        by_reference = make_subscription(external_reference="REF-1")
        make_subscription(processor_subscription_id="pre_1")

        resolution = resolver.resolve(
            db_session,
            notification(NotificationType.SUBSCRIPTION_PREAPPROVAL, "pre_1"),
            ResolutionHints(external_reference="REF-1", processor_subscription_id="pre_1")
        )

        assert resolution.entity.id == by_reference.id
        assert resolution.method == ResolutionMethod.EXTERNAL_REFERENCE

    def test_user_product_fallback(self, resolver, db_session, make_subscription):
        make_subscription(user_id="u1", product_id="p1", status="cancelled")
        pending = make_subscription(user_id="u1", product_id="p1", status="pending")

        resolution = resolver.resolve(
            db_session,
            notification(NotificationType.SUBSCRIPTION_PREAPPROVAL, "pre_x"),
            ResolutionHints(external_reference="SUB-u1-p1-new", user_id="u1", product_id="p1")
        )

        assert resolution.entity.id == pending.id
        assert resolution.method == ResolutionMethod.USER_PRODUCT

    def test_payer_email_window_fallback(self, resolver, db_session, make_subscription):
        created = utcnow() - timedelta(hours=1)
        subscription = make_subscription(customer_email="buyer@example.com", created_at=created)

        hints = ResolutionHints(payer_email="buyer@example.com", resource_created_at=created + timedelta(minutes=5))
        resolution = resolver.resolve(db_session, notification(NotificationType.SUBSCRIPTION_PREAPPROVAL), hints)

        assert resolution.entity.id == subscription.id
        assert resolution.method == ResolutionMethod.PAYER_EMAIL_WINDOW

    def test_payer_email_outside_window_misses(self, resolver, db_session, make_subscription):
        created = utcnow() - timedelta(hours=1)
        make_subscription(customer_email="buyer@example.com", created_at=created)

        hints = ResolutionHints(payer_email="buyer@example.com", resource_created_at=created + timedelta(minutes=20))
        assert resolver.resolve(db_session, notification(NotificationType.SUBSCRIPTION_PREAPPROVAL), hints) is None

    def test_miss_never_creates_entities(self, resolver, db_session, make_subscription):
        make_subscription(external_reference="SUB-u1-p1-abc")

        resolution = resolver.resolve(
            db_session, notification(), ResolutionHints(external_reference="unknown-ref", processor_payment_id="p404")
        )

        assert resolution is None
        assert db_session.query(Subscription).count() == 1


@pytest.mark.high
class TestOrderResolution:

    def test_payment_resolves_order_by_reference(self, resolver, db_session, make_order):
        order = make_order(external_reference="ORDER-123")

        resolution = resolver.resolve(db_session, notification(), ResolutionHints(external_reference="ORDER-123"))

        assert resolution.entity.id == order.id
        assert resolution.entity_type == ORDER
        assert resolution.method == ResolutionMethod.EXTERNAL_REFERENCE

    def test_payment_resolves_order_by_bare_id(self, resolver, db_session, make_order):
        order = make_order()

        resolution = resolver.resolve(db_session, notification(), ResolutionHints(external_reference=str(order.id)))

        assert resolution.entity.id == order.id
        assert resolution.entity_type == ORDER

    def test_payment_resolves_order_by_payment_reference(self, resolver, db_session, make_order):
        order = make_order(payment_reference="p1")

        resolution = resolver.resolve(db_session, notification(), ResolutionHints(processor_payment_id="p1"))

        assert resolution.entity.id == order.id
        assert resolution.method == ResolutionMethod.PROCESSOR_ID

    @pytest.mark.parametrize("reference", ["²", "٣", "99999999999999999999", "12a"])
    def test_non_ascii_or_oversized_numeric_reference_is_a_miss(self, resolver, db_session, make_order, reference):
        make_order()

        resolution = resolver.resolve(db_session, notification(), ResolutionHints(external_reference=reference))

        assert resolution is None

    def test_preapproval_notifications_never_match_orders(self, resolver, db_session, make_order):
        make_order(external_reference="ORDER-123")

        resolution = resolver.resolve(
            db_session,
            notification(NotificationType.SUBSCRIPTION_PREAPPROVAL, "pre_1"),
            ResolutionHints(external_reference="ORDER-123")
        )
        assert resolution is None


@pytest.mark.medium
class TestHints:

    @pytest.mark.parametrize("reference, expected", [
        ("SUB-u1-p1-abc", ("u1", "p1")),
        ("SUB-42-7-1700000000-xyz", ("42", "7")),
        ("SUB-u1-p1", (None, None)),
        ("ORDER-1-2-3", (None, None)),
        ("", (None, None)),
        (None, (None, None)),
    ])
    def test_parse_external_reference(self, reference, expected):
        assert parse_external_reference(reference) == expected

    def test_hints_from_payment_resource(self, payment_resource):
        created = utcnow()
        resource = payment_resource(
            external_reference="SUB-u5-p6-zz",
            payer_email="payer@example.com",
            date_created=created,
            metadata={"preapproval_id": "pre_9"},
            preapproval_id="pre_9"
        )

        hints = hints_from_resource(resource)

        assert hints.external_reference == "SUB-u5-p6-zz"
        assert hints.processor_payment_id == "p1"
        assert hints.processor_subscription_id == "pre_9"
        assert (hints.user_id, hints.product_id) == ("u5", "p6")
        assert hints.payer_email == "payer@example.com"
        assert hints.resource_created_at == created

    def test_metadata_user_product_take_precedence(self, preapproval_resource):
        resource = preapproval_resource(
            external_reference="SUB-u5-p6-zz", metadata={"user_id": 11, "product_id": 12}
        )
        hints = hints_from_resource(resource)
        assert (hints.user_id, hints.product_id) == ("11", "12")
        assert hints.processor_payment_id is None


@pytest.mark.high
class TestStorageFailures:

    def test_lookup_failure_is_transient_resolve_error(self, resolver, db_session):
        with patch.object(db_session, "query", side_effect=OperationalError("SELECT", {}, Exception("db down"))):
            with pytest.raises(StorageError) as exc_info:
                resolver.resolve(db_session, notification(), ResolutionHints(external_reference="SUB-u1-p1-abc"))

        assert exc_info.value.stage == "resolve"
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 500
