"""Periodic persistence of the webhook monitor's health report"""
import asyncio
import logging

from app.services.monitor import WebhookMonitor

monitor_logger = logging.getLogger("monitor")


async def monitor_snapshot_task(monitor: WebhookMonitor, interval_seconds: int):
    """Write a snapshot to Redis every interval; failures never touch request handling"""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await asyncio.to_thread(monitor.persist)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            monitor_logger.warning(f"Failed to persist monitor snapshot: {e}")
