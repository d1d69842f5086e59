"""
Tests for configuration and service wiring.
"""

import json

import httpx
import pytest

from harvester.config import (
    BrowserConfig,
    HarvesterConfig,
    QueueConfig,
    RateLimitConfig,
    StorageConfig,
)
from harvester.models import JobStatus
from harvester.service import HarvesterService, create_store
from harvester.storage.sqlite_store import SQLiteJobStore
from harvester.store import MemoryJobStore

from tests.helpers import SEARCH_URL, FakeSessionFactory, ScriptedLoader, listing_card, results_page


def make_config(tmp_path, **overrides) -> HarvesterConfig:
    values = dict(
        rate_limit=RateLimitConfig(min_delay=0, max_delay=0),
        queue=QueueConfig(poll_interval=0.01, max_concurrent_jobs=1),
        browser=BrowserConfig(instances=1, sessions_per_instance=1),
        storage=StorageConfig(base_path=tmp_path / "storage"),
        search_url=SEARCH_URL,
    )
    values.update(overrides)
    return HarvesterConfig(**values)


class TestConfig:
    """Tests for settings loading."""

    def test_env_override(self, monkeypatch):
        """Test that sections read their own environment prefix."""
        monkeypatch.setenv("HARVESTER_QUEUE_MAX_CONCURRENT_JOBS", "7")
        monkeypatch.setenv("HARVESTER_WEBHOOK_FAILURE_CEILING", "3")
        assert QueueConfig().max_concurrent_jobs == 7
        assert HarvesterConfig().webhook.failure_ceiling == 3

    def test_defaults(self):
        cfg = HarvesterConfig()
        assert cfg.webhook.retry_delays == [5.0, 30.0, 120.0, 600.0, 3600.0]
        assert cfg.webhook.max_attempts == 5
        assert cfg.storage.database_path.name == "harvester.db"
        assert cfg.webhook.history_size == 1000

    def test_rate_limit_fields(self):
        """Test that rate limiting is configured by window and page pacing only."""
        assert set(RateLimitConfig.model_fields) == {"max_requests", "window_seconds", "min_delay", "max_delay"}

    def test_create_store(self, tmp_path):
        assert isinstance(create_store(make_config(tmp_path)), MemoryJobStore)
        sqlite_cfg = make_config(tmp_path, storage=StorageConfig(backend="sqlite", base_path=tmp_path))
        assert isinstance(create_store(sqlite_cfg), SQLiteJobStore)


class TestHarvesterService:
    """End-to-end run through the wired service with a fake browser."""

    @pytest.mark.asyncio
    async def test_job_runs_to_completion(self, tmp_path):
        loader = ScriptedLoader(default=results_page([listing_card("A1"), listing_card("B2")], total=2))
        factory = FakeSessionFactory()
        service = HarvesterService.from_config(make_config(tmp_path), factory=factory, loader=loader)

        await service.start()
        try:
            job_id = await service.queue.submit({"location": {"states": ["TX"]}})
            await service.orchestrator.run_until_idle(timeout=5)
            job = await service.queue.get(job_id)
        finally:
            await service.stop()

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.result.records_saved == 2
        assert loader.calls == [f"{SEARCH_URL}?state=TX"]
        assert factory.closed_instances == ["instance-0"]
        assert (tmp_path / "storage" / "exports").is_dir()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, tmp_path):
        service = HarvesterService.from_config(
            make_config(tmp_path), factory=FakeSessionFactory(), loader=ScriptedLoader(default="")
        )
        await service.stop()
        assert service.pool.get_stats()["instances"] == 0

    @pytest.mark.asyncio
    async def test_export_emits_lifecycle_events(self, tmp_path):
        """Test that an export is bracketed by export.started and export.completed."""
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        loader = ScriptedLoader(default=results_page([listing_card("A1"), listing_card("B2")], total=2))
        service = HarvesterService.from_config(
            make_config(tmp_path), factory=FakeSessionFactory(), loader=loader, webhook_client=client
        )
        await service.webhooks.add_endpoint(
            "https://hooks.example.com/in", ["export.started", "export.completed", "export.failed"]
        )

        await service.start()
        try:
            await service.queue.submit({"location": {"states": ["TX"]}})
            await service.orchestrator.run_until_idle(timeout=5)
            path = await service.export_listings("jsonl", "listings.jsonl", export_dir=tmp_path / "out")
            await service.webhooks.drain()
        finally:
            await service.stop()
            await client.aclose()

        assert path == tmp_path / "out" / "listings.jsonl"
        assert len(path.read_text(encoding="utf-8").splitlines()) == 2
        assert [body["type"] for body in received] == ["export.started", "export.completed"]
        assert received[1]["data"] == {"format": "jsonl", "path": str(path), "count": 2}

    @pytest.mark.asyncio
    async def test_export_failure_emits_failed_event(self, tmp_path):
        """Test that an exporter error is reported through export.failed and re-raised."""
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        service = HarvesterService.from_config(
            make_config(tmp_path),
            factory=FakeSessionFactory(),
            loader=ScriptedLoader(default=""),
            webhook_client=client,
        )
        await service.webhooks.add_endpoint("https://hooks.example.com/in", ["export.failed"])

        with pytest.raises(ValueError):
            await service.export_listings("xml", export_dir=tmp_path)
        await service.webhooks.drain()
        await client.aclose()

        (body,) = received
        assert body["type"] == "export.failed"
        assert body["data"]["format"] == "xml"
        assert "xml" in body["data"]["error"]


class TestConcurrencyLimit:
    """Tests for fitting the job cap to the session pool."""

    def test_cap_clamped_to_configured_capacity(self, tmp_path):
        """Test that a cap above instances x sessions is lowered at build time."""
        cfg = make_config(tmp_path, queue=QueueConfig(poll_interval=0.01, max_concurrent_jobs=5))
        service = HarvesterService.from_config(cfg, factory=FakeSessionFactory(), loader=ScriptedLoader(default=""))
        assert service.queue.max_concurrent_jobs == 1

    def test_cap_within_capacity_untouched(self, tmp_path):
        cfg = make_config(
            tmp_path,
            queue=QueueConfig(poll_interval=0.01, max_concurrent_jobs=3),
            browser=BrowserConfig(instances=2, sessions_per_instance=2),
        )
        service = HarvesterService.from_config(cfg, factory=FakeSessionFactory(), loader=ScriptedLoader(default=""))
        assert service.queue.max_concurrent_jobs == 3

    @pytest.mark.asyncio
    async def test_cap_follows_launched_capacity(self, tmp_path):
        """Test that a failed browser launch lowers the cap to the sessions actually open."""
        cfg = make_config(
            tmp_path,
            queue=QueueConfig(poll_interval=0.01, max_concurrent_jobs=4),
            browser=BrowserConfig(instances=2, sessions_per_instance=2),
        )
        service = HarvesterService.from_config(
            cfg, factory=FakeSessionFactory(fail_launches=1), loader=ScriptedLoader(default="")
        )
        assert service.queue.max_concurrent_jobs == 4

        await service.start()
        try:
            assert service.pool.capacity == 2
            assert service.queue.max_concurrent_jobs == 2
        finally:
            await service.stop()
