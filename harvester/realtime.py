"""
Real-time push collaborator.

The scheduler and webhook engine report to a Notifier. The transport behind
it (SSE, WebSocket, ...) lives outside this package; calls are fire-and-forget.
"""

import logging
from typing import Any, Dict, List, Protocol, Tuple

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Push layer interface."""

    def notify_job_update(self, job_id: str, payload: Dict[str, Any]) -> None: ...

    def notify_delivery(self, event: Dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Notifier that writes updates to the log."""

    def notify_job_update(self, job_id: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"[push] job {job_id}: {payload}")

    def notify_delivery(self, event: Dict[str, Any]) -> None:
        logger.debug(f"[push] delivery {event.get('delivery_id')}: {event.get('status')}")


class RecordingNotifier:
    """Notifier that keeps every update in memory."""

    def __init__(self):
        self.job_updates: List[Tuple[str, Dict[str, Any]]] = []
        self.deliveries: List[Dict[str, Any]] = []

    def notify_job_update(self, job_id: str, payload: Dict[str, Any]) -> None:
        self.job_updates.append((job_id, dict(payload)))

    def notify_delivery(self, event: Dict[str, Any]) -> None:
        self.deliveries.append(dict(event))

    def statuses_for(self, job_id: str) -> List[str]:
        return [p["status"] for jid, p in self.job_updates if jid == job_id and "status" in p]
