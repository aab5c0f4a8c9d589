"""Background retention task for webhook bookkeeping tables"""
import asyncio
import logging

from prometheus_client import Counter, REGISTRY

from app.core.config import settings
from app.db.session import SessionLocal
from app.services.duplicate_detector import DuplicateDetector
from app.services.idempotency_service import IdempotencyCoordinator

try:
    cleanup_runs_counter = Counter(
        'petstore_cleanup_runs_total',
        'Total number of cleanup job runs',
        ['status']
    )
except ValueError:
    cleanup_runs_counter = REGISTRY._names_to_collectors.get('petstore_cleanup_runs_total')

try:
    cleanup_rows_removed_counter = Counter(
        'petstore_cleanup_rows_removed_total',
        'Total number of rows removed by the cleanup job',
        ['table']
    )
except ValueError:
    cleanup_rows_removed_counter = REGISTRY._names_to_collectors.get('petstore_cleanup_rows_removed_total')

cleanup_logger = logging.getLogger("cleanup")


def run_cleanup(db, retention_days: int = None) -> dict:
    """Purge processed/failed notifications past retention and expired lock/result rows"""
    retention_days = settings.NOTIFICATION_RETENTION_DAYS if retention_days is None else retention_days

    notifications = DuplicateDetector().purge_older_than(db, retention_days)
    idempotency_rows = IdempotencyCoordinator().purge_expired(db)

    if notifications:
        cleanup_rows_removed_counter.labels(table="webhook_notifications").inc(notifications)
        cleanup_logger.info(f"Removed {notifications} notifications older than {retention_days} days")
    if idempotency_rows:
        cleanup_rows_removed_counter.labels(table="idempotency").inc(idempotency_rows)
        cleanup_logger.info(f"Removed {idempotency_rows} expired idempotency locks/results")

    return {"notifications": notifications, "idempotency": idempotency_rows}


async def cleanup_task():
    """Background task that runs the retention purge every CLEANUP_INTERVAL_SECONDS"""
    while True:
        try:
            await asyncio.sleep(settings.CLEANUP_INTERVAL_SECONDS)

            db = SessionLocal()
            try:
                cleanup_logger.info("Starting cleanup task...")
                run_cleanup(db)
                cleanup_runs_counter.labels(status="success").inc()
                cleanup_logger.info("Cleanup task completed")
            finally:
                db.close()

        except asyncio.CancelledError:
            raise
        except Exception as e:
            cleanup_logger.error(f"Error in cleanup task: {e}", exc_info=True)
            cleanup_runs_counter.labels(status="failure").inc()
