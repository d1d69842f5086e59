"""
Service wiring.

Builds every collaborator once at process start and owns their lifetimes.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import httpx

from harvester.config import HarvesterConfig, config as default_config
from harvester.extraction import Extractor, SelectorExtractor
from harvester.fetchers.browser_fetcher import PlaywrightPageLoader, PlaywrightSessionFactory
from harvester.orchestrator import Orchestrator
from harvester.pipeline.exporters import create_exporter
from harvester.pool.session_pool import SessionFactory, SessionPool
from harvester.queue_manager import JobQueue
from harvester.realtime import LoggingNotifier, Notifier
from harvester.safety.circuit_breaker import CircuitBreaker
from harvester.safety.rate_limiter import SlidingWindowRateLimiter
from harvester.safety.retry import RetryHandler, RetryPolicy
from harvester.storage.sqlite_store import SQLiteJobStore
from harvester.stealth.proxy_pool import ProxyRotator
from harvester.store import JobStore, MemoryJobStore
from harvester.webhooks.manager import WebhookManager

logger = logging.getLogger(__name__)


def create_store(cfg: HarvesterConfig) -> JobStore:
    """Build the configured job store backend."""
    if cfg.storage.backend == "sqlite":
        return SQLiteJobStore(cfg.storage.database_path)
    return MemoryJobStore()


@dataclass
class HarvesterService:
    """
    All long-lived collaborators for one process.

    Example:
        service = HarvesterService.from_config()
        await service.start()
        job_id = await service.queue.submit({"location": {"states": ["FL"]}})
        await service.orchestrator.run_until_idle()
        await service.stop()
    """

    config: HarvesterConfig
    store: JobStore
    notifier: Notifier
    webhooks: WebhookManager
    queue: JobQueue
    proxy_rotator: ProxyRotator
    rate_limiter: SlidingWindowRateLimiter
    circuit_breaker: CircuitBreaker
    retry_handler: RetryHandler
    factory: SessionFactory
    pool: SessionPool
    orchestrator: Orchestrator
    health_check_interval: Optional[float] = None
    _started: bool = False

    @classmethod
    def from_config(
        cls,
        cfg: HarvesterConfig | None = None,
        factory: SessionFactory | None = None,
        loader: Any = None,
        extractor: Extractor | None = None,
        store: JobStore | None = None,
        notifier: Notifier | None = None,
        webhook_client: httpx.AsyncClient | None = None,
        proxy_rotator: ProxyRotator | None = None,
    ) -> "HarvesterService":
        """
        Build the service graph.

        Args:
            cfg: Configuration (module default if None)
            factory: Session factory (Playwright if None)
            loader: Page loader (Playwright if None)
            extractor: Page extractor (selector-based if None)
            store: Job store (from cfg.storage.backend if None)
            notifier: Push layer (logging if None)
            webhook_client: HTTP client for webhook deliveries
            proxy_rotator: Proxy rotator (built from cfg.proxy if None)

        Returns:
            A service ready to start
        """
        cfg = cfg or default_config
        store = store or create_store(cfg)
        notifier = notifier or LoggingNotifier()

        webhooks = WebhookManager(
            client=webhook_client,
            notifier=notifier,
            max_attempts=cfg.webhook.max_attempts,
            retry_delays=cfg.webhook.retry_delays,
            delivery_timeout=cfg.webhook.delivery_timeout,
            failure_ceiling=cfg.webhook.failure_ceiling,
            retry_scan_interval=cfg.webhook.retry_scan_interval,
            user_agent=cfg.webhook.user_agent,
            history_size=cfg.webhook.history_size,
        )

        queue = JobQueue(
            store=store,
            notifier=notifier,
            webhooks=webhooks,
            max_concurrent_jobs=cfg.queue.max_concurrent_jobs,
            poll_interval=cfg.queue.poll_interval,
            stall_timeout=cfg.queue.stall_timeout,
            reaper_interval=cfg.queue.reaper_interval,
            default_max_records=cfg.queue.default_max_records,
        )

        if proxy_rotator is None:
            proxy_rotator = ProxyRotator(
                strategy=cfg.proxy.rotation_strategy,
                enabled=cfg.proxy.enabled,
                max_failures=cfg.proxy.max_failures,
                cooldown_seconds=cfg.proxy.cooldown_seconds,
                health_check_url=cfg.proxy.health_check_url,
                probe_timeout=cfg.proxy.probe_timeout,
            )
            if cfg.proxy.enabled:
                if cfg.proxy.proxy_file:
                    proxy_rotator.load_from_file(cfg.proxy.proxy_file)
                proxy_rotator.load_from_env()

        rate_limiter = SlidingWindowRateLimiter(
            max_requests=cfg.rate_limit.max_requests,
            window_seconds=cfg.rate_limit.window_seconds,
            min_delay=cfg.rate_limit.min_delay,
            max_delay=cfg.rate_limit.max_delay,
        )
        circuit_breaker = CircuitBreaker(
            failure_threshold=cfg.breaker.failure_threshold,
            reset_timeout=cfg.breaker.reset_timeout,
            name="pages",
        )
        retry_policy = RetryPolicy(
            max_retries=cfg.retry.max_retries,
            base_delay=cfg.retry.base_delay,
            max_delay=cfg.retry.max_delay,
            backoff_multiplier=cfg.retry.backoff_multiplier,
        )
        retry_handler = RetryHandler(policy=retry_policy)

        factory = factory or PlaywrightSessionFactory(headless=cfg.browser.headless)
        pool = SessionPool(
            factory,
            instances=cfg.browser.instances,
            sessions_per_instance=cfg.browser.sessions_per_instance,
            proxy_rotator=proxy_rotator if proxy_rotator.enabled else None,
        )
        _fit_queue_to_pool(queue, cfg.browser.instances * cfg.browser.sessions_per_instance)

        orchestrator = Orchestrator(
            queue=queue,
            pool=pool,
            loader=loader or PlaywrightPageLoader(timeout_ms=cfg.browser.navigation_timeout),
            extractor=extractor or SelectorExtractor(),
            store=store,
            rate_limiter=rate_limiter,
            proxy_rotator=proxy_rotator,
            retry_handler=retry_handler,
            circuit_breaker=circuit_breaker,
            webhooks=webhooks,
            retry_policy=retry_policy,
            max_pages=cfg.max_pages,
            search_url=cfg.search_url,
        )

        return cls(
            config=cfg,
            store=store,
            notifier=notifier,
            webhooks=webhooks,
            queue=queue,
            proxy_rotator=proxy_rotator,
            rate_limiter=rate_limiter,
            circuit_breaker=circuit_breaker,
            retry_handler=retry_handler,
            factory=factory,
            pool=pool,
            orchestrator=orchestrator,
            health_check_interval=cfg.proxy.health_check_interval,
        )

    async def start(self) -> None:
        """Launch the pool, then the delivery, scheduling and runner loops."""
        if self._started:
            return
        self.config.ensure_directories()
        await self.pool.start()
        # Failed launches can leave fewer sessions than configured
        _fit_queue_to_pool(self.queue, self.pool.capacity)
        await self.webhooks.start()
        if self.proxy_rotator.enabled and self.proxy_rotator.size:
            self.proxy_rotator.start_health_checks(self.health_check_interval)
        await self.orchestrator.start()
        await self.queue.start()
        self._started = True
        logger.info("Harvester service started")

    async def stop(self) -> None:
        """Stop loops in reverse order and release every resource."""
        if not self._started:
            return
        await self.queue.stop()
        await self.orchestrator.stop()
        self.proxy_rotator.stop_health_checks()
        await self.webhooks.stop()
        await self.pool.close()
        shutdown = getattr(self.factory, "shutdown", None)
        if shutdown is not None:
            await shutdown()
        await self.store.close()
        self._started = False
        logger.info("Harvester service stopped")

    async def export_listings(
        self,
        export_format: str = "json",
        filename: str | None = None,
        export_dir: Path | str | None = None,
    ) -> Path:
        """
        Export every stored listing and report the run through webhooks.

        Emits export.started, then export.completed with the path and count,
        or export.failed before re-raising the exporter's error.

        Args:
            export_format: json, jsonl or csv
            filename: Output file name (timestamped if None)
            export_dir: Output directory (config export path if None)

        Returns:
            Path to the written file
        """
        await self._emit_export("emit_export_started", export_format)
        try:
            listings = await self.store.list_records()
            exporter = create_exporter(export_format, export_dir=export_dir)
            path = await exporter.export(listings, filename)
        except Exception as e:
            logger.error(f"Export to {export_format} failed: {e}")
            await self._emit_export("emit_export_failed", export_format, str(e))
            raise

        logger.info(f"Exported {len(listings)} listings to {path}")
        await self._emit_export("emit_export_completed", export_format, str(path), len(listings))
        return path

    async def _emit_export(self, method: str, *args: Any) -> None:
        try:
            await getattr(self.webhooks, method)(*args)
        except Exception:
            logger.exception(f"Webhook emission '{method}' failed")


def _fit_queue_to_pool(queue: JobQueue, capacity: int) -> None:
    """Keep the job cap within the session count; each running job holds one session."""
    if 0 < capacity < queue.max_concurrent_jobs:
        logger.warning(
            f"max_concurrent_jobs={queue.max_concurrent_jobs} exceeds session pool capacity "
            f"{capacity}; limiting to {capacity}"
        )
        queue.max_concurrent_jobs = capacity
