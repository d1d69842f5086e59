"""
Webhook Manager Module

At-least-once delivery of signed lifecycle events to subscriber endpoints.
Each event fans out to one delivery per subscribed endpoint; failed
deliveries climb a fixed retry ladder before being marked failed.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence

import httpx

from harvester.config import config
from harvester.models import utcnow
from harvester.realtime import Notifier

logger = logging.getLogger(__name__)


class WebhookEventType(str, Enum):
    """Event types subscribers can listen for."""
    JOB_CREATED = "job.created"
    JOB_STARTED = "job.started"
    JOB_PROGRESS = "job.progress"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    JOB_CANCELLED = "job.cancelled"

    LISTING_CREATED = "listing.created"
    LISTING_UPDATED = "listing.updated"
    LISTING_BATCH = "listing.batch"

    EXPORT_STARTED = "export.started"
    EXPORT_COMPLETED = "export.completed"
    EXPORT_FAILED = "export.failed"

    SYSTEM_ALERT = "system.alert"
    SYSTEM_HEALTH = "system.health"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    RETRY = "retry"
    FAILED = "failed"


def _short_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def sign(body: str | bytes, secret: str) -> str:
    """HMAC-SHA256 signature header value for a delivery body."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify(body: str | bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a received signature."""
    return hmac.compare_digest(sign(body, secret), signature or "")


@dataclass
class WebhookEvent:
    """An event to fan out."""

    type: str
    data: Any
    source: str = "harvester"
    id: str = field(default_factory=lambda: _short_id("evt"))
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))


@dataclass
class WebhookEndpoint:
    """A subscriber. The secret is only ever exposed by add_endpoint."""

    url: str
    events: List[str]
    secret: str
    id: str = field(default_factory=lambda: _short_id("ep"))
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_delivery: Optional[datetime] = None
    last_status: Optional[int] = None
    failure_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "events": list(self.events),
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
            "last_delivery": self.last_delivery.isoformat() if self.last_delivery else None,
            "last_status": self.last_status,
            "failure_count": self.failure_count,
            "metadata": dict(self.metadata),
        }


@dataclass
class WebhookDelivery:
    """One signed attempt chain for one endpoint and one event."""

    endpoint_id: str
    event: str
    payload: Dict[str, Any]
    body: str
    signature: str
    id: str = field(default_factory=lambda: _short_id("del"))
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    next_retry: Optional[datetime] = None
    response_status: Optional[int] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def timestamp_ms(self) -> int:
        return int(self.created_at.timestamp() * 1000)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "endpoint_id": self.endpoint_id,
            "event": self.event,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "next_retry": self.next_retry.isoformat() if self.next_retry else None,
            "response_status": self.response_status,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
        }


class WebhookManager:
    """
    Signed webhook fan-out with a fixed retry ladder.

    Features:
    - HMAC-SHA256 signed bodies (X-Webhook-Signature-256)
    - One delivery per subscribed, enabled endpoint
    - Retry ladder (5s, 30s, 2m, 10m, 1h by default)
    - Endpoints auto-disabled after repeated permanent failures
    - Failures never propagate to the emitting job

    Example:
        webhooks = WebhookManager()
        endpoint = await webhooks.add_endpoint("https://hooks.example.com/in", ["job.completed"])
        await webhooks.start()
        await webhooks.emit_job_completed(job.id, result.to_dict())
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        notifier: Notifier | None = None,
        max_attempts: int | None = None,
        retry_delays: Sequence[float] | None = None,
        delivery_timeout: float | None = None,
        failure_ceiling: int | None = None,
        retry_scan_interval: float | None = None,
        user_agent: str | None = None,
        history_size: int | None = None,
    ):
        """
        Args:
            client: HTTP client (an owned client is created if None)
            notifier: Push layer for delivery updates
            max_attempts: Attempts before a delivery fails (default from config)
            retry_delays: Retry ladder in seconds (default from config)
            delivery_timeout: Per-attempt timeout (default from config)
            failure_ceiling: Endpoint failures before auto-disable (default from config)
            retry_scan_interval: Seconds between retry scans (default from config)
            user_agent: User-Agent header (default from config)
            history_size: Finished deliveries kept for inspection (default from config)
        """
        settings = config.webhook
        self.max_attempts = max_attempts or settings.max_attempts
        self.retry_delays = list(retry_delays if retry_delays is not None else settings.retry_delays)
        self.delivery_timeout = delivery_timeout or settings.delivery_timeout
        self.failure_ceiling = failure_ceiling if failure_ceiling is not None else settings.failure_ceiling
        self.retry_scan_interval = retry_scan_interval or settings.retry_scan_interval
        self.user_agent = user_agent or settings.user_agent

        self._client = client
        self._owns_client = client is None
        self._notifier = notifier

        self._endpoints: Dict[str, WebhookEndpoint] = {}
        # In-flight deliveries only; finished ones move to the bounded history
        self._deliveries: Dict[str, WebhookDelivery] = {}
        self._history: Deque[WebhookDelivery] = deque(
            maxlen=history_size if history_size is not None else settings.history_size
        )
        self._finished = {DeliveryStatus.DELIVERED: 0, DeliveryStatus.FAILED: 0}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._retry: List[WebhookDelivery] = []
        self._lock = asyncio.Lock()

        self._worker_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None

    # --- Endpoint management ---------------------------------------------

    @staticmethod
    def _check_events(events: Iterable[str]) -> List[str]:
        checked = []
        for event in events:
            try:
                checked.append(WebhookEventType(event).value)
            except ValueError:
                raise ValueError(f"Unknown webhook event type: {event!r}") from None
        if not checked:
            raise ValueError("At least one event type is required")
        return checked

    @staticmethod
    def _check_url(url: str) -> str:
        if not url.startswith(("http://", "https://")):
            raise ValueError("Webhook URL must start with http:// or https://")
        return url

    async def add_endpoint(
        self,
        url: str,
        events: Iterable[str],
        metadata: Dict[str, Any] | None = None,
    ) -> WebhookEndpoint:
        """
        Register a subscriber.

        Returns:
            The endpoint, including its generated secret (shown only here)
        """
        endpoint = WebhookEndpoint(
            url=self._check_url(url),
            events=self._check_events(events),
            secret=secrets.token_hex(32),
            metadata=dict(metadata or {}),
        )
        self._endpoints[endpoint.id] = endpoint
        logger.info(f"Webhook endpoint added: {endpoint.id} -> {url} ({', '.join(endpoint.events)})")
        return endpoint

    async def update_endpoint(
        self,
        endpoint_id: str,
        url: str | None = None,
        events: Iterable[str] | None = None,
        enabled: bool | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> Optional[dict]:
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            return None

        if url is not None:
            endpoint.url = self._check_url(url)
        if events is not None:
            endpoint.events = self._check_events(events)
        if enabled is not None:
            endpoint.enabled = enabled
            if enabled:
                endpoint.failure_count = 0
        if metadata is not None:
            endpoint.metadata = dict(metadata)

        logger.info(f"Webhook endpoint updated: {endpoint_id}")
        return endpoint.to_dict()

    async def remove_endpoint(self, endpoint_id: str) -> bool:
        removed = self._endpoints.pop(endpoint_id, None) is not None
        if removed:
            logger.info(f"Webhook endpoint removed: {endpoint_id}")
        return removed

    def get_endpoint(self, endpoint_id: str) -> Optional[dict]:
        endpoint = self._endpoints.get(endpoint_id)
        return endpoint.to_dict() if endpoint else None

    def list_endpoints(self) -> List[dict]:
        return [e.to_dict() for e in self._endpoints.values()]

    def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        delivery = self._deliveries.get(delivery_id)
        if delivery is not None:
            return delivery
        return next((d for d in self._history if d.id == delivery_id), None)

    def list_deliveries(self, endpoint_id: str | None = None) -> List[WebhookDelivery]:
        """In-flight deliveries plus the recent finished history."""
        return [
            d for d in [*self._history, *self._deliveries.values()]
            if endpoint_id is None or d.endpoint_id == endpoint_id
        ]

    def _finish(self, delivery: WebhookDelivery) -> None:
        if self._deliveries.pop(delivery.id, None) is None:
            return
        self._finished[delivery.status] += 1
        self._history.append(delivery)

    # --- Emission ----------------------------------------------------------

    def _create_delivery(self, endpoint: WebhookEndpoint, event: WebhookEvent) -> WebhookDelivery:
        payload = {
            "id": event.id,
            "type": event.type,
            "data": event.data,
            "timestamp": event.timestamp,
            "source": event.source,
        }
        body = json.dumps(payload, separators=(",", ":"), default=str)
        return WebhookDelivery(
            endpoint_id=endpoint.id,
            event=event.type,
            payload=payload,
            body=body,
            signature=sign(body, endpoint.secret),
        )

    async def emit_event(self, event: WebhookEvent) -> List[WebhookDelivery]:
        """
        Fan an event out to every enabled endpoint subscribed to its type.

        Returns:
            The queued deliveries
        """
        event_type = event.type.value if isinstance(event.type, WebhookEventType) else event.type
        event.type = event_type

        targets = [e for e in self._endpoints.values() if e.enabled and event_type in e.events]
        if not targets:
            logger.debug(f"No endpoints listening for event: {event_type}")
            return []

        deliveries = [self._create_delivery(endpoint, event) for endpoint in targets]
        for delivery in deliveries:
            self._deliveries[delivery.id] = delivery
            await self._queue.put(delivery)

        logger.debug(f"Queued {len(deliveries)} deliveries for event: {event_type} ({event.id})")
        return deliveries

    async def _emit(self, event_type: WebhookEventType, data: Any, source: str) -> List[WebhookDelivery]:
        return await self.emit_event(WebhookEvent(type=event_type.value, data=data, source=source))

    async def emit_job_created(self, job_id: str, job_data: Dict[str, Any] | None = None):
        return await self._emit(WebhookEventType.JOB_CREATED, {"job_id": job_id, **(job_data or {})}, "job-queue")

    async def emit_job_started(self, job_id: str):
        return await self._emit(WebhookEventType.JOB_STARTED, {"job_id": job_id}, "job-queue")

    async def emit_job_progress(self, job_id: str, progress: int, message: str = ""):
        return await self._emit(
            WebhookEventType.JOB_PROGRESS,
            {"job_id": job_id, "progress": progress, "message": message},
            "job-queue",
        )

    async def emit_job_completed(self, job_id: str, result: Dict[str, Any]):
        return await self._emit(WebhookEventType.JOB_COMPLETED, {"job_id": job_id, "result": result}, "job-queue")

    async def emit_job_failed(self, job_id: str, error: str):
        return await self._emit(WebhookEventType.JOB_FAILED, {"job_id": job_id, "error": error}, "job-queue")

    async def emit_job_cancelled(self, job_id: str):
        return await self._emit(WebhookEventType.JOB_CANCELLED, {"job_id": job_id}, "job-queue")

    async def emit_listings_batch(self, listings: List[Dict[str, Any]], job_id: str | None = None):
        data = {"listings": listings, "count": len(listings)}
        if job_id:
            data["job_id"] = job_id
        return await self._emit(WebhookEventType.LISTING_BATCH, data, "harvester")

    async def emit_export_started(self, export_format: str):
        return await self._emit(WebhookEventType.EXPORT_STARTED, {"format": export_format}, "exporter")

    async def emit_export_completed(self, export_format: str, path: str, count: int):
        return await self._emit(
            WebhookEventType.EXPORT_COMPLETED,
            {"format": export_format, "path": path, "count": count},
            "exporter",
        )

    async def emit_export_failed(self, export_format: str, error: str):
        return await self._emit(WebhookEventType.EXPORT_FAILED, {"format": export_format, "error": error}, "exporter")

    async def emit_system_alert(self, alert: Dict[str, Any]):
        return await self._emit(WebhookEventType.SYSTEM_ALERT, alert, "monitoring")

    # --- Delivery ------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.delivery_timeout)
            self._owns_client = True
        return self._client

    def _headers(self, delivery: WebhookDelivery) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            "X-Webhook-Signature-256": delivery.signature,
            "X-Webhook-Delivery": delivery.id,
            "X-Webhook-Event": delivery.event,
            "X-Webhook-Timestamp": str(delivery.timestamp_ms),
        }

    def _notify(self, delivery: WebhookDelivery) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify_delivery({
                "delivery_id": delivery.id,
                "endpoint_id": delivery.endpoint_id,
                "event": delivery.event,
                "status": delivery.status.value,
                "attempts": delivery.attempts,
            })
        except Exception:
            logger.exception("Delivery notification failed")

    async def attempt_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        """
        POST a delivery once and record the outcome.

        Args:
            delivery: The delivery to attempt

        Returns:
            The updated delivery
        """
        endpoint = self._endpoints.get(delivery.endpoint_id)
        if endpoint is None or not endpoint.enabled:
            delivery.status = DeliveryStatus.FAILED
            delivery.error = "Endpoint removed or disabled"
            delivery.next_retry = None
            logger.info(f"Skipping delivery {delivery.id} to inactive endpoint {delivery.endpoint_id}")
            self._finish(delivery)
            self._notify(delivery)
            return delivery

        delivery.last_attempt = utcnow()
        error: Optional[str] = None
        try:
            response = await self._get_client().post(
                endpoint.url,
                content=delivery.body.encode("utf-8"),
                headers=self._headers(delivery),
                timeout=self.delivery_timeout,
            )
            delivery.response_status = response.status_code
            endpoint.last_status = response.status_code
            if response.is_success:
                delivery.status = DeliveryStatus.DELIVERED
                delivery.error = None
                delivery.next_retry = None
                endpoint.last_delivery = delivery.last_attempt
                endpoint.failure_count = 0
                logger.info(f"Webhook delivered: {delivery.id} -> {endpoint.url}")
                self._finish(delivery)
                self._notify(delivery)
                return delivery
            error = f"HTTP {response.status_code}"
        except httpx.TimeoutException:
            error = f"Timed out after {self.delivery_timeout}s"
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"

        delivery.attempts += 1
        delivery.error = error

        if delivery.attempts < self.max_attempts:
            step = min(delivery.attempts - 1, len(self.retry_delays) - 1)
            delivery.status = DeliveryStatus.RETRY
            delivery.next_retry = delivery.last_attempt + timedelta(seconds=self.retry_delays[step])
            async with self._lock:
                self._retry.append(delivery)
            logger.warning(
                f"Webhook delivery failed, will retry: {delivery.id} "
                f"(attempt {delivery.attempts}/{self.max_attempts}, {error})"
            )
        else:
            delivery.status = DeliveryStatus.FAILED
            delivery.next_retry = None
            endpoint.failure_count += 1
            logger.error(f"Webhook delivery failed permanently: {delivery.id} ({error})")
            if endpoint.failure_count > self.failure_ceiling:
                endpoint.enabled = False
                logger.error(f"Disabled webhook endpoint after repeated failures: {endpoint.id}")
            self._finish(delivery)

        self._notify(delivery)
        return delivery

    async def process_retry_queue(self, now: datetime | None = None) -> int:
        """
        Re-attempt deliveries whose next_retry is due.

        Args:
            now: Reference time (default current UTC time)

        Returns:
            Number of deliveries re-attempted
        """
        now = now or utcnow()
        async with self._lock:
            due = [d for d in self._retry if d.next_retry and d.next_retry <= now]
            self._retry = [d for d in self._retry if d not in due]

        for delivery in due:
            await self.attempt_delivery(delivery)
        return len(due)

    async def _process_one(self) -> None:
        delivery = await self._queue.get()
        try:
            await self.attempt_delivery(delivery)
        except Exception:
            logger.exception(f"Unexpected error delivering {delivery.id}")
        finally:
            self._queue.task_done()

    async def _delivery_worker(self) -> None:
        while True:
            await self._process_one()

    async def _retry_loop(self) -> None:
        while True:
            await asyncio.sleep(self.retry_scan_interval)
            try:
                await self.process_retry_queue()
            except Exception:
                logger.exception("Webhook retry scan failed")

    async def drain(self) -> None:
        """Wait until every queued delivery has been attempted once."""
        if self._worker_task is not None and not self._worker_task.done():
            await self._queue.join()
            return
        while not self._queue.empty():
            await self._process_one()

    async def start(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.create_task(self._delivery_worker())
            self._retry_task = asyncio.create_task(self._retry_loop())
            logger.info("Webhook manager started")

    async def stop(self) -> None:
        for task in (self._worker_task, self._retry_task):
            if task is not None:
                task.cancel()
        for task in (self._worker_task, self._retry_task):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._worker_task = None
        self._retry_task = None

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Webhook manager stopped")

    def get_stats(self) -> dict:
        by_status = {status.value: 0 for status in DeliveryStatus}
        for status, count in self._finished.items():
            by_status[status.value] = count
        for delivery in self._deliveries.values():
            by_status[delivery.status.value] += 1
        return {
            "total_endpoints": len(self._endpoints),
            "active_endpoints": sum(1 for e in self._endpoints.values() if e.enabled),
            "queued": self._queue.qsize(),
            "retry_queue": len(self._retry),
            "deliveries": by_status,
        }
