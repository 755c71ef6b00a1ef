"""
Alert system for processing worker events.

Provides webhook notifications for:
- Jobs that failed outright (download, probe, manifest upload)
- Jobs where every planned rendition failed
- Worker startup and shutdown

Includes rate limiting to prevent alert flooding.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Set

import httpx

from api.errors import truncate_error
from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL, ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Types of alerts that can be sent."""

    JOB_FAILED = "job_failed"
    ALL_RENDITIONS_FAILED = "all_renditions_failed"
    WORKER_STARTUP = "worker_startup"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass
class AlertMetrics:
    """Tracks metrics for alerting and monitoring."""

    jobs_failed: int = 0
    jobs_all_renditions_failed: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    # Failures by asset for pattern detection
    asset_failure_counts: Dict[str, int] = field(default_factory=dict)

    def increment_failed(self, asset_id: Optional[str] = None) -> int:
        """Increment jobs failed counter and track per-asset failures."""
        self.jobs_failed += 1
        if asset_id is not None:
            self.asset_failure_counts[asset_id] = self.asset_failure_counts.get(asset_id, 0) + 1
        return self.jobs_failed

    def increment_all_renditions_failed(self) -> int:
        self.jobs_all_renditions_failed += 1
        return self.jobs_all_renditions_failed

    def get_asset_failure_count(self, asset_id: str) -> int:
        return self.asset_failure_counts.get(asset_id, 0)

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = 300) -> bool:
        """Check if enough time has passed since the last alert of this type."""
        last_time = self.last_alert_time.get(alert_type)
        if last_time is None:
            return True
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str):
        self.last_alert_time[alert_type] = time.time()
        self.alerts_sent += 1

    def record_alert_rate_limited(self):
        self.alerts_rate_limited += 1

    def record_alert_failed(self):
        self.alerts_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary for reporting."""
        return {
            "jobs_failed": self.jobs_failed,
            "jobs_all_renditions_failed": self.jobs_all_renditions_failed,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
            "assets_with_failures": len(self.asset_failure_counts),
        }


# Global metrics instance
_metrics: Optional[AlertMetrics] = None

# Strong references to in-flight fire-and-forget tasks
_background_tasks: Set[asyncio.Task] = set()


def get_metrics() -> AlertMetrics:
    """Get or create the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics():
    """Reset metrics (for testing)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> Optional[asyncio.Task]:
    """
    Schedule an alert coroutine as a fire-and-forget background task.

    Alert failures never reach the caller. Any exceptions are logged at
    debug level.

    Args:
        coro: The alert coroutine to execute (e.g., alert_job_failed(...))

    Returns:
        The scheduled task, or None if there is no running event loop
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Failed to send alert (fire-and-forget): {e}")

    try:
        task = asyncio.get_running_loop().create_task(_safe_send())
    except RuntimeError:
        coro.close()
        logger.debug("Cannot send alert: no running event loop")
        return None

    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
) -> bool:
    """
    Send an alert to the configured webhook URL.

    Args:
        alert_type: Type of alert being sent
        details: Additional details about the alert
        force: If True, bypass rate limiting

    Returns:
        True if alert was sent successfully, False otherwise
    """
    if not ALERT_WEBHOOK_URL:
        return False

    metrics = get_metrics()

    if not force and not metrics.can_send_alert(alert_type.value, ALERT_RATE_LIMIT_SECONDS):
        metrics.record_alert_rate_limited()
        logger.debug(f"Alert {alert_type.value} rate limited")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(
                ALERT_WEBHOOK_URL,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()

        metrics.record_alert_sent(alert_type.value)
        logger.info(f"Alert sent: {alert_type.value}")
        return True

    except httpx.TimeoutException:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook timed out after {ALERT_WEBHOOK_TIMEOUT}s")
        return False
    except httpx.HTTPStatusError as e:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook returned error: {e.response.status_code}")
        return False
    except httpx.HTTPError as e:
        metrics.record_alert_failed()
        logger.warning(f"Failed to send alert webhook: {e}")
        return False


async def alert_job_failed(asset_id: str, owner_id: str, error: str):
    """
    Send alert when a job fails with a fatal error.

    Args:
        asset_id: Asset the job was processing
        owner_id: Owner of the asset
        error: Error message
    """
    metrics = get_metrics()
    metrics.increment_failed(asset_id)

    await send_webhook_alert(
        AlertType.JOB_FAILED,
        {
            "asset_id": asset_id,
            "owner_id": owner_id,
            "error": truncate_error(error, ERROR_DETAIL_MAX_LENGTH),
            "asset_failure_count": metrics.get_asset_failure_count(asset_id),
        },
    )


async def alert_all_renditions_failed(asset_id: str, owner_id: str, failures: List[str]):
    """
    Send alert when every planned rendition of a job failed.

    The asset is left unpublished, so these always go out.

    Args:
        asset_id: Asset the job was processing
        owner_id: Owner of the asset
        failures: One error description per failed tier
    """
    metrics = get_metrics()
    metrics.increment_failed(asset_id)
    metrics.increment_all_renditions_failed()

    await send_webhook_alert(
        AlertType.ALL_RENDITIONS_FAILED,
        {
            "asset_id": asset_id,
            "owner_id": owner_id,
            "failures": [truncate_error(f, ERROR_DETAIL_MAX_LENGTH) for f in failures],
            "total_all_renditions_failed": metrics.jobs_all_renditions_failed,
        },
        force=True,
    )


async def alert_worker_startup(worker_id: str, concurrency: int = 1):
    """Send alert when a worker starts up."""
    await send_webhook_alert(
        AlertType.WORKER_STARTUP,
        {
            "worker_id": worker_id,
            "concurrency": concurrency,
        },
        force=True,
    )


async def alert_worker_shutdown(worker_id: str, jobs_pending: int = 0):
    """
    Send alert when a worker shuts down.

    Args:
        worker_id: ID of the worker
        jobs_pending: Jobs still queued (they are lost with the process)
    """
    await send_webhook_alert(
        AlertType.WORKER_SHUTDOWN,
        {
            "worker_id": worker_id,
            "jobs_pending": jobs_pending,
            "final_metrics": get_metrics().to_dict(),
        },
        force=True,
    )
