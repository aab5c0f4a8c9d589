"""Notification pipeline - the orchestrator behind POST /webhook.

Each request walks Received -> Verified -> Deduplicated -> Parsed ->
Dispatched -> Resolved -> Reconciled -> Completed, ending in Rejected on
failure or Skipped for notification types this service does not handle.
Verification runs before any storage access. The processor state is fetched
first and, together with the resource, keys the idempotency coordinator, so
one processor state change is resolved and applied at most once while a later
change to the same resource is always applied.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import PayloadError, StorageError, WebhookError
from app.core.metrics import notifications_counter, processing_seconds_histogram
from app.core.otel import get_tracer
from app.models.reconciliation_issue import ReconciliationIssue
from app.schemas.webhooks import (
    Notification, NotificationType, PipelineOutcome, PipelineStage, WebhookPayload
)
from app.services.duplicate_detector import DuplicateDetector, DuplicateOutcome
from app.services.entity_resolver import EntityResolver, hints_from_resource
from app.services.idempotency_service import IdempotencyCoordinator
from app.services.monitor import WebhookMonitor
from app.services.processor_client import ProcessorClient, ProcessorResource
from app.services.reconciler import StateReconciler
from app.services.signature_service import SignatureVerifier
from app.utils.timeutils import utcnow

logger = logging.getLogger("webhook")
tracer = get_tracer(__name__)

UNSUPPORTED_TYPES = (NotificationType.SUBSCRIPTION_PLAN, NotificationType.UNKNOWN)

# Actions that may legitimately bring a cancelled subscription back
RESUME_ACTIONS = ("resume", "resumed", "reactivated", "subscription.resumed")


@dataclass
class _RequestState:
    last_stage: PipelineStage = PipelineStage.RECEIVED
    notification_id: Optional[str] = None
    notification_type: Optional[str] = None
    action: Optional[str] = None
    resource_id: Optional[str] = None
    recorded: bool = False
    resolution_method: Optional[str] = None


class NotificationPipeline:
    """Processes one raw delivery end to end and reports a PipelineOutcome"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        verifier: SignatureVerifier,
        detector: DuplicateDetector,
        coordinator: IdempotencyCoordinator,
        resolver: EntityResolver,
        reconciler: StateReconciler,
        processor: ProcessorClient,
        monitor: Optional[WebhookMonitor] = None,
        result_ttl_seconds: int = 300
    ):
        self.session_factory = session_factory
        self.verifier = verifier
        self.detector = detector
        self.coordinator = coordinator
        self.resolver = resolver
        self.reconciler = reconciler
        self.processor = processor
        self.monitor = monitor
        self.result_ttl_seconds = result_ttl_seconds

    def handle(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        timestamp_header: Optional[str]
    ) -> PipelineOutcome:
        """Run one delivery through the pipeline. Never raises."""
        started = time.perf_counter()
        state = _RequestState()
        db = self.session_factory()

        with tracer.start_as_current_span("webhook.handle") as span:
            try:
                fields = self._run(db, state, raw_body, signature_header, timestamp_header)
            except WebhookError as e:
                log = logger.warning if not e.retryable else logger.error
                log(
                    f"Notification {state.notification_id or '?'} rejected at stage {e.stage} "
                    f"({e.__class__.__name__}): {e.message} "
                    f"[type={state.notification_type} resource={state.resource_id}]"
                )
                self._mark_failed(db, state, f"{e.__class__.__name__}: {e.message}")
                fields = dict(
                    stage=PipelineStage.REJECTED,
                    success=False,
                    status_code=e.status_code,
                    message=e.message,
                    failed_stage=e.stage,
                    error_category=e.category,
                    error=e.__class__.__name__
                )
            except Exception as e:
                logger.error(
                    f"Unexpected error processing notification {state.notification_id or '?'} "
                    f"[type={state.notification_type} resource={state.resource_id}]: {e}",
                    exc_info=True
                )
                self._mark_failed(db, state, f"internal: {e}")
                fields = dict(
                    stage=PipelineStage.REJECTED,
                    success=False,
                    status_code=500,
                    message="Internal error while processing notification",
                    failed_stage="internal",
                    error_category="internal",
                    error=e.__class__.__name__
                )
            finally:
                db.close()

            outcome = PipelineOutcome(
                notification_id=state.notification_id,
                notification_type=state.notification_type,
                action=state.action,
                resource_id=state.resource_id,
                last_stage=state.last_stage,
                duration_ms=(time.perf_counter() - started) * 1000,
                resolution_method=state.resolution_method,
                timestamp=utcnow(),
                **fields
            )
            span.set_attribute("webhook.notification_id", outcome.notification_id or "")
            span.set_attribute("webhook.stage", outcome.stage.value)
            span.set_attribute("webhook.success", outcome.success)

        self._observe(outcome)
        return outcome

    def _run(
        self,
        db: Session,
        state: _RequestState,
        raw_body: bytes,
        signature_header: Optional[str],
        timestamp_header: Optional[str]
    ) -> Dict[str, Any]:
        # Verify - no storage access before this succeeds
        if self.verifier.verify(raw_body, signature_header, timestamp_header):
            self.verifier.check_freshness(timestamp_header)
        state.last_stage = PipelineStage.VERIFIED

        envelope = self._decode(raw_body)
        state.notification_id = str(envelope["id"])
        state.notification_type = str(envelope.get("type") or "")
        state.action = str(envelope.get("action") or "")
        data = envelope.get("data")
        if isinstance(data, dict) and data.get("id") not in (None, ""):
            state.resource_id = str(data["id"])

        # Deduplicate
        dedupe = self.detector.check_and_record(
            db,
            state.notification_id,
            notification_type=state.notification_type,
            action=state.action,
            resource_id=state.resource_id,
            raw_body=raw_body
        )
        if dedupe == DuplicateOutcome.DUPLICATE:
            logger.info(f"Duplicate notification {state.notification_id} acknowledged without processing")
            state.last_stage = PipelineStage.DEDUPLICATED
            return dict(
                stage=PipelineStage.COMPLETED,
                success=True,
                status_code=200,
                message="Duplicate notification",
                duplicate=True
            )
        state.recorded = True
        state.last_stage = PipelineStage.DEDUPLICATED

        notification = self._parse(envelope, raw_body)
        state.last_stage = PipelineStage.PARSED
        logger.info(
            f"Processing notification {notification.id}: type={notification.type.value} "
            f"action={notification.action} resource={notification.resource_id}"
        )

        # Dispatch
        if notification.type in UNSUPPORTED_TYPES:
            logger.info(f"Notification type '{notification.raw_type}' not handled, skipping {notification.id}")
            self.detector.mark_outcome(db, notification.id, success=True)
            state.last_stage = PipelineStage.DISPATCHED
            return dict(
                stage=PipelineStage.SKIPPED,
                success=True,
                status_code=200,
                message=f"Notification type '{notification.raw_type}' not supported"
            )
        state.last_stage = PipelineStage.DISPATCHED

        # Fetch outside the lock: the processor's current state is part of the event key
        resource = self._fetch(notification)
        execution = self.coordinator.execute_once(
            db,
            notification.idempotency_key(resource.state_version),
            self.result_ttl_seconds,
            lambda: self._reconcile(db, notification, resource, state)
        )
        result = execution.value or {}
        if result.get("resolution_method"):
            state.resolution_method = result["resolution_method"]
            state.last_stage = PipelineStage.RESOLVED
        if result.get("status") == "reconciled":
            state.last_stage = PipelineStage.RECONCILED

        self.detector.mark_outcome(db, notification.id, success=True)
        logger.info(f"Notification {notification.id} completed: {result.get('message')}")
        return dict(
            stage=PipelineStage.COMPLETED,
            success=True,
            status_code=200,
            message=result.get("message", "Processed"),
            from_cache=execution.from_cache,
            result=result
        )

    def _decode(self, raw_body: bytes) -> Dict[str, Any]:
        try:
            envelope = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise PayloadError(f"Invalid JSON payload: {e}")
        if not isinstance(envelope, dict):
            raise PayloadError("Payload must be a JSON object")
        if envelope.get("id") in (None, ""):
            raise PayloadError("Payload is missing the notification id")
        return envelope

    def _parse(self, envelope: Dict[str, Any], raw_body: bytes) -> Notification:
        try:
            payload = WebhookPayload.model_validate(envelope)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise PayloadError(f"Invalid notification payload: {problems}")

        return Notification(
            id=payload.id,
            type=NotificationType.from_raw(payload.type),
            raw_type=payload.type,
            action=payload.action or "",
            resource_id=payload.data.id,
            raw_body=raw_body,
            received_at=utcnow()
        )

    def _fetch(self, notification: Notification) -> ProcessorResource:
        if notification.type == NotificationType.PAYMENT:
            return self.processor.get_payment(notification.resource_id)
        if notification.type == NotificationType.SUBSCRIPTION_PAYMENT:
            return self.processor.get_authorized_payment(notification.resource_id)
        return self.processor.get_preapproval(notification.resource_id)

    def _reconcile(
        self,
        db: Session,
        notification: Notification,
        resource: ProcessorResource,
        state: _RequestState
    ) -> Dict[str, Any]:
        """Resolve and reconcile; the return value is cached by the coordinator"""
        with tracer.start_as_current_span("webhook.reconcile"):
            hints = hints_from_resource(resource)
            resolution = self.resolver.resolve(db, notification, hints)

            if resolution is None:
                self._record_miss(db, notification, hints.for_log())
                return {
                    "status": "not_found",
                    "message": f"No local entity matches {notification.type.value} {notification.resource_id}",
                    "processor_status": resource.status,
                }

            state.last_stage = PipelineStage.RESOLVED
            state.resolution_method = resolution.method.value
            result = self.reconciler.reconcile(
                db,
                resolution.entity,
                resource,
                cause=f"{notification.type.value}.{notification.action or 'notification'} {notification.id}",
                allow_resume=notification.action.lower() in RESUME_ACTIONS,
                notification_id=notification.id
            )

        if result.conflict:
            message = f"Transition rejected for {result.entity_type} {result.entity_id}: {result.conflict}"
        elif result.changed:
            message = f"{result.entity_type} {result.entity_id}: {result.previous_status} -> {result.new_status}"
        else:
            message = f"{result.entity_type} {result.entity_id} already {result.new_status}"

        return dict(
            result.to_dict(),
            status="reconciled",
            message=message,
            resolution_method=resolution.method.value,
            processor_status=resource.status
        )

    def _record_miss(self, db: Session, notification: Notification, keys: Dict[str, Any]) -> None:
        try:
            db.add(ReconciliationIssue(
                kind="resolution_miss",
                notification_id=notification.id,
                notification_type=notification.type.value,
                resource_id=notification.resource_id,
                keys=keys,
                detail=f"{notification.type.value} {notification.resource_id} matched no subscription or order"
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Could not record resolution miss: {e}", stage="resolve")

    def _mark_failed(self, db: Session, state: _RequestState, error: str) -> None:
        if not state.recorded:
            return
        try:
            self.detector.mark_outcome(db, state.notification_id, success=False, error=error)
        except StorageError as e:
            # The row stays 'received' and becomes reclaimable once stale
            logger.error(f"Could not mark notification {state.notification_id} as failed: {e.message}")

    def _observe(self, outcome: PipelineOutcome) -> None:
        if not outcome.success:
            label = "rejected"
        elif outcome.duplicate:
            label = "duplicate"
        elif outcome.stage == PipelineStage.SKIPPED:
            label = "skipped"
        elif (outcome.result or {}).get("status") == "not_found":
            label = "not_found"
        else:
            label = "processed"

        notification_type = NotificationType.from_raw(outcome.notification_type).value
        notifications_counter.labels(type=notification_type, outcome=label).inc()
        processing_seconds_histogram.labels(outcome=label).observe(outcome.duration_ms / 1000.0)

        if self.monitor is None:
            return
        try:
            self.monitor.record(outcome)
        except Exception as e:
            logger.warning(f"Monitor failed to record outcome for {outcome.notification_id}: {e}")
