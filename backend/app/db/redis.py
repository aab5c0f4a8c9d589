"""Redis client for monitor snapshot persistence"""
import json
import logging
from typing import Any, Dict, List, Optional

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

MONITOR_SNAPSHOT_KEY = "webhook_monitor:snapshot"
MONITOR_HISTORY_KEY = "webhook_monitor:history"
MONITOR_HISTORY_LENGTH = 288  # 24h at the default 5 minute interval


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def save_monitor_snapshot(report: Dict[str, Any], client=None) -> None:
    """Store the latest health report and append it to the capped history"""
    client = client or get_redis_client()
    payload = json.dumps(report)
    pipe = client.pipeline()
    pipe.set(MONITOR_SNAPSHOT_KEY, payload)
    pipe.lpush(MONITOR_HISTORY_KEY, payload)
    pipe.ltrim(MONITOR_HISTORY_KEY, 0, MONITOR_HISTORY_LENGTH - 1)
    pipe.execute()


def get_monitor_snapshot(client=None) -> Optional[Dict[str, Any]]:
    """Latest report persisted by any instance, or None"""
    client = client or get_redis_client()
    raw = client.get(MONITOR_SNAPSHOT_KEY)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding unreadable monitor snapshot")
        return None


def get_monitor_history(limit: int = 24, client=None) -> List[Dict[str, Any]]:
    """Most recent persisted reports, newest first"""
    client = client or get_redis_client()
    history = []
    for raw in client.lrange(MONITOR_HISTORY_KEY, 0, max(limit, 1) - 1):
        try:
            history.append(json.loads(raw))
        except ValueError:
            continue
    return history
