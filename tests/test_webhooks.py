"""
Tests for the webhook manager.
"""

import json
from datetime import timedelta

import httpx
import pytest

from harvester.realtime import RecordingNotifier
from harvester.webhooks.manager import (
    DeliveryStatus,
    WebhookEvent,
    WebhookManager,
    sign,
    verify,
)


class Receiver:
    """MockTransport handler with scripted status codes."""

    def __init__(self, *statuses: int):
        self.statuses = list(statuses) or [200]
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status)


def make_manager(receiver: Receiver, **kwargs) -> WebhookManager:
    client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
    kwargs.setdefault("retry_delays", (5, 30, 120, 600, 3600))
    kwargs.setdefault("max_attempts", 5)
    kwargs.setdefault("failure_ceiling", 10)
    return WebhookManager(client=client, **kwargs)


class TestSigning:
    """Tests for HMAC signing helpers."""

    def test_sign_format(self):
        """Test that signatures are sha256= followed by 64 hex chars."""
        signature = sign('{"a":1}', "secret")
        assert signature.startswith("sha256=")
        assert len(signature) == len("sha256=") + 64

    def test_verify(self):
        """Test verification of good and tampered bodies."""
        body = '{"id":"evt_1","type":"job.completed"}'
        signature = sign(body, "s3cret")

        assert verify(body, signature, "s3cret") is True
        assert verify(body + " ", signature, "s3cret") is False
        assert verify(body, signature, "other") is False
        assert verify(body, "", "s3cret") is False


class TestEndpoints:
    """Tests for endpoint management."""

    @pytest.mark.asyncio
    async def test_add_endpoint_generates_secret(self):
        """Test that the secret is returned once and never listed."""
        manager = make_manager(Receiver())
        endpoint = await manager.add_endpoint("https://hooks.example.com/in", ["job.completed"])

        assert endpoint.id.startswith("ep_")
        assert len(endpoint.secret) == 64
        assert "secret" not in manager.get_endpoint(endpoint.id)
        assert all("secret" not in e for e in manager.list_endpoints())

    @pytest.mark.asyncio
    async def test_rejects_unknown_events_and_urls(self):
        """Test validation of event names and URLs."""
        manager = make_manager(Receiver())
        with pytest.raises(ValueError):
            await manager.add_endpoint("https://hooks.example.com/in", ["job.exploded"])
        with pytest.raises(ValueError):
            await manager.add_endpoint("ftp://hooks.example.com/in", ["job.completed"])

    @pytest.mark.asyncio
    async def test_update_keeps_secret(self):
        """Test that updates never rotate the secret."""
        manager = make_manager(Receiver())
        endpoint = await manager.add_endpoint("https://hooks.example.com/in", ["job.completed"])
        secret = endpoint.secret

        updated = await manager.update_endpoint(endpoint.id, events=["job.failed"], enabled=False)
        assert updated["events"] == ["job.failed"]
        assert updated["enabled"] is False
        assert endpoint.secret == secret

        assert await manager.update_endpoint("ep_missing", enabled=True) is None
        assert await manager.remove_endpoint(endpoint.id) is True
        assert manager.get_endpoint(endpoint.id) is None


class TestDelivery:
    """Tests for fan-out, signing and retries."""

    @pytest.mark.asyncio
    async def test_signed_delivery(self):
        """Test that the receiver can verify the exact body it got."""
        receiver = Receiver(200)
        notifier = RecordingNotifier()
        manager = make_manager(receiver, notifier=notifier)
        endpoint = await manager.add_endpoint("https://hooks.example.com/in", ["job.completed"])

        await manager.emit_job_completed("job-1", {"records_saved": 4})
        await manager.drain()

        (request,) = receiver.requests
        body = request.content.decode()
        assert verify(body, request.headers["X-Webhook-Signature-256"], endpoint.secret)
        assert request.headers["X-Webhook-Event"] == "job.completed"
        assert request.headers["X-Webhook-Delivery"].startswith("del_")
        assert request.headers["X-Webhook-Timestamp"].isdigit()
        assert request.headers["Content-Type"] == "application/json"

        payload = json.loads(body)
        assert list(payload) == ["id", "type", "data", "timestamp", "source"]
        assert payload["data"] == {"job_id": "job-1", "result": {"records_saved": 4}}
        assert ", " not in body

        assert notifier.deliveries[-1]["status"] == "delivered"
        assert manager.get_endpoint(endpoint.id)["last_status"] == 200

    @pytest.mark.asyncio
    async def test_fan_out_only_to_subscribers(self):
        """Test that only enabled, subscribed endpoints receive an event."""
        receiver = Receiver(200)
        manager = make_manager(receiver)
        await manager.add_endpoint("https://a.example.com/in", ["job.completed"])
        await manager.add_endpoint("https://b.example.com/in", ["job.failed"])
        disabled = await manager.add_endpoint("https://c.example.com/in", ["job.completed"])
        await manager.update_endpoint(disabled.id, enabled=False)

        deliveries = await manager.emit_event(WebhookEvent(type="job.completed", data={"job_id": "j"}))
        await manager.drain()

        assert len(deliveries) == 1
        assert [str(r.url) for r in receiver.requests] == ["https://a.example.com/in"]

    @pytest.mark.asyncio
    async def test_retry_ladder(self):
        """Test that failed deliveries are rescheduled along the ladder."""
        receiver = Receiver(503, 503, 200)
        manager = make_manager(receiver)
        await manager.add_endpoint("https://hooks.example.com/in", ["system.alert"])

        (delivery,) = await manager.emit_system_alert({"level": "warning"})
        await manager.drain()

        assert delivery.status == DeliveryStatus.RETRY
        assert delivery.attempts == 1
        assert delivery.next_retry - delivery.last_attempt == timedelta(seconds=5)

        # Not yet due
        assert await manager.process_retry_queue(now=delivery.last_attempt) == 0

        assert await manager.process_retry_queue(now=delivery.next_retry) == 1
        assert delivery.attempts == 2
        assert delivery.next_retry - delivery.last_attempt == timedelta(seconds=30)

        assert await manager.process_retry_queue(now=delivery.next_retry) == 1
        assert delivery.status == DeliveryStatus.DELIVERED
        assert len(receiver.requests) == 3

        # Every attempt carries the same signed body
        assert len({r.content for r in receiver.requests}) == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_disables_endpoint(self):
        """Test that repeated permanent failures disable an endpoint."""
        receiver = Receiver(500)
        manager = make_manager(receiver, max_attempts=1, failure_ceiling=2)
        endpoint = await manager.add_endpoint("https://hooks.example.com/in", ["job.failed"])

        for i in range(3):
            await manager.emit_job_failed(f"job-{i}", "boom")
            await manager.drain()

        info = manager.get_endpoint(endpoint.id)
        assert info["failure_count"] == 3
        assert info["enabled"] is False

        # Disabled endpoints receive nothing further
        assert await manager.emit_job_failed("job-x", "boom") == []

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        """Test that a 2xx resets the endpoint failure counter."""
        receiver = Receiver(500, 204)
        manager = make_manager(receiver, max_attempts=1)
        endpoint = await manager.add_endpoint("https://hooks.example.com/in", ["job.failed"])

        await manager.emit_job_failed("job-1", "boom")
        await manager.drain()
        assert manager.get_endpoint(endpoint.id)["failure_count"] == 1

        await manager.emit_job_failed("job-2", "boom")
        await manager.drain()
        assert manager.get_endpoint(endpoint.id)["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self):
        """Test that connection errors are treated like failed attempts."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        manager = WebhookManager(client=client, max_attempts=5, retry_delays=(5, 30, 120, 600, 3600))
        await manager.add_endpoint("https://hooks.example.com/in", ["job.started"])

        (delivery,) = await manager.emit_job_started("job-1")
        await manager.drain()

        assert delivery.status == DeliveryStatus.RETRY
        assert "ConnectError" in delivery.error
        assert manager.get_stats()["retry_queue"] == 1

    @pytest.mark.asyncio
    async def test_removed_endpoint_skips_delivery(self):
        """Test that deliveries to removed endpoints are dropped."""
        receiver = Receiver(200)
        manager = make_manager(receiver)
        endpoint = await manager.add_endpoint("https://hooks.example.com/in", ["job.started"])

        (delivery,) = await manager.emit_job_started("job-1")
        await manager.remove_endpoint(endpoint.id)
        await manager.drain()

        assert receiver.requests == []
        assert delivery.status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_worker_lifecycle(self):
        """Test that the background worker delivers queued events."""
        receiver = Receiver(200)
        manager = make_manager(receiver)
        await manager.add_endpoint("https://hooks.example.com/in", ["export.completed"])

        await manager.start()
        try:
            await manager.emit_export_completed("csv", "/tmp/out.csv", 12)
            await manager.drain()
        finally:
            await manager.stop()

        assert len(receiver.requests) == 1
        assert manager.get_stats()["deliveries"]["delivered"] == 1


class TestDeliveryHistory:
    """Tests for bounded retention of finished deliveries."""

    @pytest.mark.asyncio
    async def test_finished_deliveries_are_bounded(self):
        """Test that only recent finished deliveries are kept, with full totals."""
        receiver = Receiver(200)
        manager = make_manager(receiver, history_size=2)
        await manager.add_endpoint("https://hooks.example.com/in", ["job.started"])

        deliveries = []
        for i in range(5):
            deliveries.extend(await manager.emit_job_started(f"job-{i}"))
            await manager.drain()

        assert [d.id for d in manager.list_deliveries()] == [d.id for d in deliveries[-2:]]
        assert manager.get_delivery(deliveries[0].id) is None
        assert manager.get_delivery(deliveries[-1].id) is deliveries[-1]
        assert manager.get_stats()["deliveries"]["delivered"] == 5

    @pytest.mark.asyncio
    async def test_retrying_delivery_stays_in_flight(self):
        """Test that a delivery awaiting retry remains retrievable until it finishes."""
        receiver = Receiver(503, 200)
        manager = make_manager(receiver, history_size=1)
        await manager.add_endpoint("https://hooks.example.com/in", ["job.started"])

        (pending,) = await manager.emit_job_started("job-1")
        await manager.drain()
        (other,) = await manager.emit_job_started("job-2")
        await manager.drain()

        assert manager.get_delivery(pending.id) is pending
        assert manager.get_stats()["deliveries"] == {
            "pending": 0, "delivered": 1, "retry": 1, "failed": 0,
        }

        await manager.process_retry_queue(now=pending.next_retry)
        assert manager.get_delivery(pending.id) is pending
        assert manager.get_delivery(other.id) is None
        assert manager.get_stats()["deliveries"]["delivered"] == 2
