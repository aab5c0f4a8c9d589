"""Explicit construction of the webhook pipeline and its collaborators"""
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.services.duplicate_detector import DuplicateDetector
from app.services.entity_resolver import EntityResolver
from app.services.idempotency_service import IdempotencyCoordinator
from app.services.monitor import WebhookMonitor
from app.services.processor_client import ProcessorClient
from app.services.reconciler import StateReconciler
from app.services.signature_service import SignatureVerifier
from app.services.webhook_pipeline import NotificationPipeline


def build_monitor(settings: Settings) -> WebhookMonitor:
    return WebhookMonitor(
        window_size=settings.MONITOR_WINDOW_SIZE,
        silence_hours=settings.MONITOR_SILENCE_HOURS
    )


def build_pipeline(
    settings: Settings,
    monitor: Optional[WebhookMonitor] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    processor: Optional[ProcessorClient] = None
) -> NotificationPipeline:
    """Wire a pipeline from settings; tests pass their own session factory and processor"""
    if session_factory is None:
        from app.db.session import SessionLocal
        session_factory = SessionLocal

    return NotificationPipeline(
        session_factory=session_factory,
        verifier=SignatureVerifier(
            secret=settings.WEBHOOK_SECRET,
            environment=settings.ENVIRONMENT,
            replay_window_seconds=settings.WEBHOOK_REPLAY_WINDOW_SECONDS
        ),
        detector=DuplicateDetector(stale_after_seconds=settings.NOTIFICATION_STALE_SECONDS),
        coordinator=IdempotencyCoordinator(
            lock_ttl_seconds=settings.IDEMPOTENCY_LOCK_TTL_SECONDS,
            max_retries=settings.IDEMPOTENCY_MAX_RETRIES,
            retry_backoff_ms=settings.IDEMPOTENCY_RETRY_BACKOFF_MS,
            max_backoff_ms=settings.IDEMPOTENCY_MAX_BACKOFF_MS
        ),
        resolver=EntityResolver(),
        reconciler=StateReconciler(),
        processor=processor or ProcessorClient(
            base_url=settings.PROCESSOR_API_BASE,
            access_token=settings.PROCESSOR_ACCESS_TOKEN,
            timeout=settings.PROCESSOR_TIMEOUT_SECONDS
        ),
        monitor=monitor,
        result_ttl_seconds=settings.IDEMPOTENCY_RESULT_TTL_SECONDS
    )
