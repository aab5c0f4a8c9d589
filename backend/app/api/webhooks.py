"""Payment processor webhook routes"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.db.redis import get_monitor_snapshot
from app.services.monitor import WebhookMonitor
from app.services.webhook_pipeline import NotificationPipeline

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger("webhook")


def get_pipeline(request: Request) -> NotificationPipeline:
    """Pipeline built at startup; overridden in tests"""
    return request.app.state.pipeline


def get_monitor(request: Request) -> WebhookMonitor:
    return request.app.state.monitor


def get_snapshot_reader(request: Request):
    """Callable returning the last persisted monitor report (None when unavailable)"""
    return get_monitor_snapshot


@router.post("/webhook")
async def receive_webhook(request: Request, pipeline: NotificationPipeline = Depends(get_pipeline)):
    """Handle a payment processor notification

    The body is read as raw bytes because the signature covers the exact bytes sent.
    """
    payload = await request.body()
    signature = request.headers.get("x-signature")
    timestamp = request.headers.get("x-timestamp") or request.headers.get("x-request-id")

    # Lock back-off sleeps and storage I/O are blocking; keep them off the event loop
    outcome = await run_in_threadpool(pipeline.handle, payload, signature, timestamp)
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_response())


@router.get("/webhook")
def webhook_status(
    monitor: WebhookMonitor = Depends(get_monitor),
    read_snapshot=Depends(get_snapshot_reader)
):
    """Current monitor statistics plus the last snapshot persisted by any instance"""
    try:
        persisted = read_snapshot()
    except Exception as e:
        logger.warning(f"Could not read persisted monitor snapshot: {e}")
        persisted = None

    report = monitor.generate_health_report()
    return {
        "status": report["status"],
        "score": report["score"],
        "stats": report["stats"],
        "issues": report["issues"],
        "recent_events": monitor.get_recent_events(limit=20),
        "persisted": persisted,
    }
