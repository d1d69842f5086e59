"""
Main Orchestrator Module

Runs claimed jobs end to end: session checkout, paced and retried page
loads behind the circuit breaker, record processing, persistence, webhooks
and progress reporting.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Set

from harvester.config import config
from harvester.errors import ErrorType, FilterValidationError, HarvesterError
from harvester.extraction import Extractor, PageExtraction, SelectorExtractor
from harvester.models import FilterSpec, Job, JobResult
from harvester.pipeline.processor import DataProcessor
from harvester.pool.session_pool import Session, SessionPool
from harvester.queue_manager import JobQueue
from harvester.safety.circuit_breaker import CircuitBreaker
from harvester.safety.rate_limiter import SlidingWindowRateLimiter
from harvester.safety.retry import RetryHandler, RetryPolicy, classify_error
from harvester.stealth.proxy_pool import ProxyRotator
from harvester.store import JobStore

logger = logging.getLogger(__name__)


# Progress stays below this until the job is actually complete
MAX_RUNNING_PROGRESS = 95

# Error messages kept on a JobResult
MAX_RESULT_ERRORS = 20

_ERROR_LABELS = {
    ErrorType.NETWORK: "Network error",
    ErrorType.TIMEOUT: "Timed out",
    ErrorType.RATE_LIMITED: "Rate limited by target",
    ErrorType.CAPTCHA: "Captcha challenge",
    ErrorType.BLOCKED: "Access blocked",
    ErrorType.PARSING: "Could not parse page",
    ErrorType.UNKNOWN: "Unexpected error",
}


def describe_error(error: BaseException) -> str:
    """Human-readable failure message for a job."""
    label = _ERROR_LABELS[classify_error(error)]
    detail = error.message if isinstance(error, HarvesterError) else str(error)
    return f"{label}: {detail}" if detail else label


@dataclass
class JobRun:
    """Counters for one job execution."""

    pages: int = 0
    attempts: int = 0
    found: int = 0
    saved: int = 0
    errors: List[str] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)

    @property
    def duration(self) -> float:
        return time.monotonic() - self.started


class Orchestrator:
    """
    Job runner connecting the queue to the pool, safety layer and pipeline.

    Implements the per-job workflow:
    1. Filters become a search URL
    2. A pooled session is checked out
    3. Each page: rate limiter wait, random delay, load, extract
       (retried, behind the circuit breaker)
    4. Records are cleaned, validated and deduplicated
    5. New listings are persisted and announced
    6. The next page is followed until a cap is reached

    Example:
        orchestrator = Orchestrator(queue, pool, loader)
        await orchestrator.start()
        await orchestrator.run_until_idle()
    """

    def __init__(
        self,
        queue: JobQueue,
        pool: SessionPool,
        loader: Any,
        extractor: Extractor | None = None,
        store: JobStore | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        proxy_rotator: ProxyRotator | None = None,
        retry_handler: RetryHandler | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        webhooks: Any = None,
        retry_policy: RetryPolicy | None = None,
        max_pages: int | None = None,
        search_url: str | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            queue: Job queue to consume
            pool: Session pool
            loader: Page loader exposing async load(session, url) -> str
            extractor: Page extractor (selector-based if None)
            store: Listing persistence (the queue's store if None)
            rate_limiter: Shared rate limiter
            proxy_rotator: Proxy health reporting (optional)
            retry_handler: Retry executor
            circuit_breaker: Breaker wrapping each page's retry loop
            webhooks: WebhookManager for listing batches (optional)
            retry_policy: Retry policy override
            max_pages: Page cap per job (default from config)
            search_url: Base search URL (default from config)
        """
        self.queue = queue
        self.pool = pool
        self.loader = loader
        self.extractor = extractor or SelectorExtractor()
        self.store = store or queue.store
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.proxy_rotator = proxy_rotator
        self.retry_handler = retry_handler or RetryHandler()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name="pages")
        self.webhooks = webhooks
        self.retry_policy = retry_policy
        self.max_pages = max_pages or config.max_pages
        self.search_url = search_url or config.search_url

        self._tasks: Set[asyncio.Task] = set()
        self._runner: Optional[asyncio.Task] = None

    # --- Page handling ---------------------------------------------------

    async def _load_and_extract(self, session: Session, url: str, run: JobRun) -> PageExtraction:
        """One paced attempt at a page."""
        run.attempts += 1
        await self.rate_limiter.wait()
        await self.rate_limiter.random_delay()

        started = time.monotonic()
        try:
            content = await self.loader.load(session, url)
        except Exception as e:
            if self.proxy_rotator is not None:
                self.proxy_rotator.record_result(session.proxy, False)
            error_type = classify_error(e)
            if error_type == ErrorType.RATE_LIMITED:
                self.rate_limiter.halt(reason="rate_limited")
            elif error_type == ErrorType.CAPTCHA:
                self.rate_limiter.halt(reason="captcha")
            raise

        if self.proxy_rotator is not None:
            self.proxy_rotator.record_result(session.proxy, True, time.monotonic() - started)
        return self.extractor.extract(content, url)

    async def fetch_page(self, session: Session, url: str, run: JobRun) -> PageExtraction:
        """
        Load and extract a page with retries behind the circuit breaker.

        Raises:
            The last attempt's error if the page could not be fetched
        """
        def on_final_failure(error: BaseException, attempts: int) -> None:
            logger.error(f"Giving up on {url} after {attempts} attempts: {error}")

        async def retried() -> PageExtraction:
            result = await self.retry_handler.execute_with_retry(
                lambda: self._load_and_extract(session, url, run),
                policy=self.retry_policy,
                on_final_failure=on_final_failure,
            )
            if not result.success:
                raise result.error
            return result.data

        return await self.circuit_breaker.call(retried)

    def _progress(self, job: Job, run: JobRun, page: PageExtraction) -> int:
        if page.total_pages:
            ratio = run.pages / min(page.total_pages, self.max_pages)
        elif page.total_results:
            ratio = run.found / min(page.total_results, job.max_records)
        else:
            ratio = run.found / job.max_records
        return min(MAX_RUNNING_PROGRESS, int(ratio * 100))

    # --- Job execution ---------------------------------------------------

    async def process_job(self, job: Job) -> None:
        """Run one claimed job to completion, failure or cancellation."""
        run = JobRun()

        try:
            spec = FilterSpec.parse(job.filters)
        except FilterValidationError as e:
            await self.queue.fail(job.id, str(e))
            return

        url: Optional[str] = spec.to_search_url(self.search_url)
        processor = DataProcessor()
        logger.info(f"Job {job.id} starting at {url}")

        try:
            async with self.pool.session() as session:
                while url and run.pages < self.max_pages and run.found < job.max_records:
                    if not self.queue.is_active(job.id):
                        logger.info(f"Job {job.id} no longer active, stopping before page {run.pages + 1}")
                        return

                    page = await self.fetch_page(session, url, run)
                    run.pages += 1

                    batch = processor.process_batch(page.records)
                    listings = batch.successful[: job.max_records - run.found]
                    for failed in batch.failed:
                        if not failed.duplicate and len(run.errors) < MAX_RESULT_ERRORS:
                            run.errors.extend(failed.errors)

                    if not self.queue.is_active(job.id):
                        logger.info(f"Job {job.id} no longer active, discarding page {run.pages}")
                        return

                    saved = await self.store.create_records_if_absent(listings)
                    run.found += len(listings)
                    run.saved += saved

                    if listings and self.webhooks is not None and job.enable_webhooks:
                        try:
                            await self.webhooks.emit_listings_batch(
                                [listing.model_dump(mode="json") for listing in listings],
                                job_id=job.id,
                            )
                        except Exception:
                            logger.exception(f"Listing batch webhook failed for job {job.id}")

                    await self.queue.update_progress(
                        job.id,
                        self._progress(job, run, page),
                        f"Page {run.pages}: {run.found} listings found",
                    )
                    url = page.next_page_url

        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = describe_error(e)
            logger.error(f"Job {job.id} failed after {run.attempts} attempts: {message}")
            await self.queue.complete(job.id, JobResult(
                success=False,
                pages_processed=run.pages,
                records_found=run.found,
                records_saved=run.saved,
                attempts=run.attempts,
                duration=run.duration,
                error=message,
                errors=(run.errors + [message])[-MAX_RESULT_ERRORS:],
            ))
            return

        stats = processor.get_stats()
        await self.queue.complete(job.id, JobResult(
            success=True,
            records_found=run.found,
            records_saved=run.saved,
            pages_processed=run.pages,
            attempts=run.attempts,
            duplicates=stats.duplicates + (run.found - run.saved),
            failed=stats.failed,
            warnings=stats.warnings,
            duration=run.duration,
            errors=run.errors[:MAX_RESULT_ERRORS],
        ))

    # --- Runner ----------------------------------------------------------

    async def run(self) -> None:
        """Consume the queue's dispatch stream, one task per job."""
        async for job in self.queue.stream():
            task = asyncio.create_task(self.process_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def start(self) -> None:
        if self._runner is None:
            self._runner = asyncio.create_task(self.run())

    async def stop(self) -> None:
        tasks = [t for t in [self._runner, *self._tasks] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._runner = None
        self._tasks.clear()

    @property
    def running_jobs(self) -> int:
        return len(self._tasks)

    async def run_until_idle(self, poll_interval: float = 0.05, timeout: float | None = None) -> None:
        """
        Wait until no job is pending or running and webhooks are drained.

        Args:
            poll_interval: Seconds between checks
            timeout: Give up after this many seconds (None = wait forever)
        """
        async def _wait() -> None:
            while True:
                stats = await self.queue.get_stats()
                if stats["pending"] == 0 and stats["active"] == 0 and not self._tasks:
                    break
                await asyncio.sleep(poll_interval)
            if self.webhooks is not None:
                await self.webhooks.drain()

        await asyncio.wait_for(_wait(), timeout=timeout)
