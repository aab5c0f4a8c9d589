"""Webhook health monitor.

Consumes the pipeline's outcome events into a bounded in-memory window and
derives statistics, detected issues and a 0-100 health score. It is an
observer only: nothing in the reconciliation path waits on it.
"""
import logging
import threading
import time
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from app.db.redis import save_monitor_snapshot
from app.schemas.webhooks import PipelineOutcome, PipelineStage

logger = logging.getLogger("monitor")

SEVERITY_PENALTIES = {"CRITICAL": 30, "HIGH": 20, "MEDIUM": 10, "LOW": 5}


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class WebhookMonitor:
    """Rolling statistics over the most recent pipeline outcomes"""

    def __init__(
        self,
        window_size: int = 1000,
        silence_hours: float = 24,
        slow_processing_ms: float = 5000,
        clock: Callable[[], float] = time.time
    ):
        self.window_size = window_size
        self.silence_hours = silence_hours
        self.slow_processing_ms = slow_processing_ms
        self._clock = clock
        self._events = deque(maxlen=window_size)
        self._lock = threading.Lock()
        self.started_at = clock()

    def record(self, outcome: PipelineOutcome) -> None:
        event = {
            "notification_id": outcome.notification_id,
            "type": outcome.notification_type,
            "action": outcome.action,
            "resource_id": outcome.resource_id,
            "stage": outcome.stage.value,
            "last_stage": outcome.last_stage.value,
            "failed_stage": outcome.failed_stage,
            "success": outcome.success,
            "duplicate": outcome.duplicate,
            "skipped": outcome.stage == PipelineStage.SKIPPED,
            "error_category": outcome.error_category,
            "error": outcome.error,
            "duration_ms": outcome.duration_ms,
            "resolution_method": outcome.resolution_method,
            "timestamp": self._clock(),
        }
        with self._lock:
            self._events.append(event)

    def _snapshot_events(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._events)

    def get_stats(self) -> Dict[str, Any]:
        events = self._snapshot_events()
        processed = [e for e in events if e["success"]]
        errors = [e for e in events if not e["success"]]
        total = len(events)
        average_ms = sum(e["duration_ms"] for e in events) / total if total else 0.0

        return {
            "total_received": total,
            "total_processed": len(processed),
            "total_errors": len(errors),
            "total_duplicates": sum(1 for e in events if e["duplicate"]),
            "total_skipped": sum(1 for e in events if e["skipped"]),
            "average_processing_time_ms": round(average_ms, 1),
            "error_rate": (len(errors) / total) * 100 if total else 0.0,
            "last_received": _iso(events[-1]["timestamp"]) if events else None,
            "last_processed": _iso(processed[-1]["timestamp"]) if processed else None,
            "recent_errors": [
                {
                    "timestamp": _iso(e["timestamp"]),
                    "notification_id": e["notification_id"],
                    "stage": e["failed_stage"] or e["last_stage"],
                    "error": e["error"] or "unknown error",
                }
                for e in errors[-10:]
            ],
            "resolution_methods": self.resolution_distribution(events),
            "window_size": self.window_size,
        }

    def resolution_distribution(self, events: Optional[List[Dict[str, Any]]] = None) -> Dict[str, int]:
        """How often each resolution method fired; a rising share of weak
        methods points at an upstream correlation-key problem"""
        if events is None:
            events = self._snapshot_events()
        return dict(Counter(e["resolution_method"] for e in events if e["resolution_method"]))

    def get_recent_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        events = self._snapshot_events()
        recent = list(reversed(events[-limit:])) if limit > 0 else []
        return [dict(e, timestamp=_iso(e["timestamp"])) for e in recent]

    def detect_issues(self, stats: Optional[Dict[str, Any]] = None) -> List[Dict[str, str]]:
        stats = stats or self.get_stats()
        events = self._snapshot_events()
        issues = []

        if stats["error_rate"] > 50:
            issues.append({
                "type": "HIGH_ERROR_RATE",
                "severity": "CRITICAL",
                "description": f"Error rate is {stats['error_rate']:.1f}%",
                "recommendation": "Check error logs and the webhook configuration",
            })
        elif stats["error_rate"] > 20:
            issues.append({
                "type": "ELEVATED_ERROR_RATE",
                "severity": "HIGH",
                "description": f"Error rate is elevated at {stats['error_rate']:.1f}%",
                "recommendation": "Watch errors and verify database and processor connectivity",
            })

        if stats["average_processing_time_ms"] > self.slow_processing_ms:
            issues.append({
                "type": "SLOW_PROCESSING",
                "severity": "MEDIUM",
                "description": f"Average processing time is {stats['average_processing_time_ms']:.0f}ms",
                "recommendation": "Look for slow storage queries or processor API latency",
            })

        # Silence counts from the last delivery, or from startup if nothing ever arrived
        last_seen = events[-1]["timestamp"] if events else self.started_at
        hours_silent = (self._clock() - last_seen) / 3600
        if hours_silent > self.silence_hours:
            issues.append({
                "type": "NO_RECENT_WEBHOOKS",
                "severity": "MEDIUM",
                "description": f"No webhooks received in {hours_silent:.1f} hours",
                "recommendation": "Verify the webhook URL is registered with the payment processor",
            })

        recent_error_count = sum(1 for e in events[-5:] if not e["success"])
        if recent_error_count >= 3:
            issues.append({
                "type": "CONSECUTIVE_ERRORS",
                "severity": "HIGH",
                "description": f"{recent_error_count} of the last 5 webhooks failed",
                "recommendation": "Investigate the root cause of the recent failures",
            })

        return issues

    def generate_health_report(self) -> Dict[str, Any]:
        stats = self.get_stats()
        issues = self.detect_issues(stats)

        score = 100.0
        score -= stats["error_rate"] * 2
        if stats["average_processing_time_ms"] > 3000:
            score -= 10
        for issue in issues:
            score -= SEVERITY_PENALTIES.get(issue["severity"], 0)
        score = max(0.0, min(100.0, score))

        if score >= 80:
            status, summary = "healthy", "Webhook processing is healthy"
        elif score >= 60:
            status, summary = "warning", "Webhook processing has warnings"
        else:
            status, summary = "critical", "Webhook processing has critical problems"

        recommendations = [issue["recommendation"] for issue in issues]
        if stats["error_rate"] > 0:
            recommendations.append("Review error logs for recurring patterns")
        if stats["total_received"] == 0:
            recommendations.append("Verify that webhooks are configured at the payment processor")

        return {
            "status": status,
            "score": round(score),
            "summary": summary,
            "stats": stats,
            "issues": issues,
            "recommendations": list(dict.fromkeys(recommendations)),
            "generated_at": _iso(self._clock()),
        }

    def persist(self, redis_client=None) -> Dict[str, Any]:
        """Store the current health report in Redis (latest + bounded history)"""
        report = self.generate_health_report()
        save_monitor_snapshot(report, client=redis_client)
        logger.info(f"Persisted webhook health snapshot (score {report['score']}, {report['status']})")
        return report
