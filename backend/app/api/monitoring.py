"""Monitoring API routes for health checks and metrics"""
from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.api.webhooks import get_monitor
from app.services.monitor import WebhookMonitor

router = APIRouter(tags=["monitoring"])


@router.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check(monitor: WebhookMonitor = Depends(get_monitor)):
    """Health check endpoint with the webhook health report"""
    return monitor.generate_health_report()
