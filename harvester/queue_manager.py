"""
Job Queue Manager Module

Persistent priority job queue with a polling scheduler and a stall reaper.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Optional, Set

from harvester.config import config
from harvester.errors import StalledJobError
from harvester.models import (
    FilterSpec,
    Job,
    JobPriority,
    JobResult,
    JobStatus,
    can_transition,
    utcnow,
)
from harvester.realtime import LoggingNotifier, Notifier
from harvester.store import JobStore, MemoryJobStore

logger = logging.getLogger(__name__)


def _coerce_priority(priority: JobPriority | int | str) -> JobPriority:
    if isinstance(priority, str):
        return JobPriority[priority.upper()]
    return JobPriority(priority)


class JobQueue:
    """
    Priority job queue with bounded concurrency.

    Features:
    - Priority ordering (HIGH > NORMAL > LOW), FIFO within a tier
    - Hard cap on jobs in PROCESSING
    - Polling scheduler with event wake-ups
    - Stall reaper for jobs that stop reporting progress
    - Cooperative cancellation and explicit resume

    Example:
        queue = JobQueue(store=MemoryJobStore())
        job_id = await queue.submit({"location": {"states": ["TX"]}})
        await queue.start()
        async for job in queue.stream():
            ...
    """

    def __init__(
        self,
        store: JobStore | None = None,
        notifier: Notifier | None = None,
        webhooks: Any = None,
        max_concurrent_jobs: int | None = None,
        poll_interval: float | None = None,
        stall_timeout: float | None = None,
        reaper_interval: float | None = None,
        default_max_records: int | None = None,
    ):
        """
        Initialize the queue.

        Args:
            store: Job persistence (in-memory if None)
            notifier: Push layer for job updates
            webhooks: WebhookManager for lifecycle events (optional)
            max_concurrent_jobs: Cap on PROCESSING jobs (default from config)
            poll_interval: Seconds between scheduler polls (default from config)
            stall_timeout: Seconds without an update before reaping (default from config)
            reaper_interval: Seconds between stall sweeps (default from config)
            default_max_records: Record cap for jobs submitted without one
        """
        settings = config.queue
        self.store = store or MemoryJobStore()
        self.notifier = notifier or LoggingNotifier()
        self.webhooks = webhooks

        self.max_concurrent_jobs = max_concurrent_jobs or settings.max_concurrent_jobs
        self.poll_interval = poll_interval or settings.poll_interval
        self.stall_timeout = stall_timeout or settings.stall_timeout
        self.reaper_interval = reaper_interval or settings.reaper_interval
        self.default_max_records = default_max_records or settings.default_max_records

        self._active: Set[str] = set()
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._channel: asyncio.Queue = asyncio.Queue()
        self._consumer_registered = False

        self._poll_task: Optional[asyncio.Task] = None
        self._reaper_task: Optional[asyncio.Task] = None

    # --- Notifications ---------------------------------------------------

    def _push(self, job: Job) -> None:
        try:
            self.notifier.notify_job_update(job.id, {
                "status": job.status.value,
                "progress": job.progress,
                "message": job.message,
                "error": job.error,
            })
        except Exception:
            logger.exception(f"Push notification failed for job {job.id}")

    async def _emit(self, job: Job, method: str, *args: Any) -> None:
        if self.webhooks is None or not job.enable_webhooks:
            return
        try:
            await getattr(self.webhooks, method)(job.id, *args)
        except Exception:
            logger.exception(f"Webhook emission '{method}' failed for job {job.id}")

    def wake(self) -> None:
        """Trigger an immediate scheduler pass."""
        self._wake.set()

    # --- Submission and lookup -------------------------------------------

    async def submit(
        self,
        filters: Dict[str, Any],
        priority: JobPriority | int | str = JobPriority.NORMAL,
        max_records: int | None = None,
        enable_webhooks: bool = False,
    ) -> str:
        """
        Validate filters and enqueue a job.

        Args:
            filters: Raw filter specification
            priority: Job priority
            max_records: Record cap (default from config)
            enable_webhooks: Emit lifecycle webhooks for this job

        Returns:
            The new job id

        Raises:
            FilterValidationError: If the filters are malformed
        """
        FilterSpec.parse(filters)

        job = Job(
            filters=filters,
            priority=_coerce_priority(priority),
            max_records=max_records or self.default_max_records,
            enable_webhooks=enable_webhooks,
            message="Queued",
        )
        job = await self.store.create_job(job)
        logger.info(f"Job {job.id} submitted (priority={job.priority.name})")

        self._push(job)
        await self._emit(job, "emit_job_created", {
            "priority": job.priority.name,
            "max_records": job.max_records,
            "filters": job.filters,
        })
        self.wake()
        return job.id

    async def get(self, job_id: str) -> Optional[Job]:
        return await self.store.find_job(job_id)

    def is_active(self, job_id: str) -> bool:
        """True while the job holds a processing slot."""
        return job_id in self._active

    @property
    def active_count(self) -> int:
        return len(self._active)

    # --- Lifecycle transitions ------------------------------------------

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a pending or running job.

        A running job notices at its next cooperative check; its slot is
        released immediately.

        Returns:
            True if the job was cancelled
        """
        async with self._lock:
            job = await self.store.find_job(job_id)
            if job is None or not can_transition(job.status, JobStatus.CANCELLED):
                return False

            now = utcnow()
            job = await self.store.update_job(
                job_id,
                status=JobStatus.CANCELLED,
                message="Cancelled",
                completed_at=now,
                updated_at=now,
            )
            self._active.discard(job_id)

        logger.info(f"Job {job_id} cancelled")
        self._push(job)
        await self._emit(job, "emit_job_cancelled")
        self.wake()
        return True

    async def resume(self, job_id: str) -> bool:
        """Move a cancelled job back to PENDING."""
        async with self._lock:
            job = await self.store.find_job(job_id)
            if job is None or job.status != JobStatus.CANCELLED:
                return False
            job = await self.store.update_job(
                job_id,
                status=JobStatus.PENDING,
                message="Resumed",
                error=None,
                completed_at=None,
                updated_at=utcnow(),
            )

        logger.info(f"Job {job_id} resumed")
        self._push(job)
        self.wake()
        return True

    async def update_progress(self, job_id: str, percent: int, message: str = "") -> bool:
        """
        Record progress for a running job.

        Also refreshes the stall timer. Ignored unless the job is PROCESSING.
        Progress is published before the lock is released, so it can never
        follow a cancellation of the same job.
        """
        percent = max(0, min(100, int(percent)))
        async with self._lock:
            job = await self.store.find_job(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return False
            job = await self.store.update_job(job_id, progress=percent, message=message, updated_at=utcnow())
            self._push(job)
            await self._emit(job, "emit_job_progress", percent, message)
        return True

    async def complete(self, job_id: str, result: JobResult) -> bool:
        """
        Finish a running job.

        The final status follows result.success. Calls for jobs that are no
        longer PROCESSING (cancelled, reaped) are ignored.
        """
        async with self._lock:
            job = await self.store.find_job(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                logger.debug(f"Ignoring completion for job {job_id} (not processing)")
                return False

            now = utcnow()
            status = JobStatus.COMPLETED if result.success else JobStatus.FAILED
            fields: Dict[str, Any] = {
                "status": status,
                "result": result,
                "error": result.error,
                "completed_at": now,
                "updated_at": now,
            }
            if result.success:
                fields["progress"] = 100
                fields["message"] = f"Completed: {result.records_saved} listings saved"
            else:
                fields["message"] = "Failed"
            job = await self.store.update_job(job_id, **fields)
            self._active.discard(job_id)

        if result.success:
            logger.info(f"Job {job_id} completed ({result.records_saved} saved, {result.duplicates} duplicates)")
            self._push(job)
            await self._emit(job, "emit_job_completed", result.to_dict())
        else:
            logger.error(f"Job {job_id} failed: {result.error}")
            self._push(job)
            await self._emit(job, "emit_job_failed", result.error or "Unknown error")

        self.wake()
        return True

    async def fail(self, job_id: str, error: str) -> bool:
        return await self.complete(job_id, JobResult(success=False, error=error, errors=[error]))

    # --- Scheduling ------------------------------------------------------

    async def dispatch_once(self) -> Optional[Job]:
        """
        Claim the best pending job if a slot is free.

        Returns:
            The claimed job, now PROCESSING, or None
        """
        async with self._lock:
            if len(self._active) >= self.max_concurrent_jobs:
                return None

            job = await self.store.find_next_pending()
            if job is None:
                return None

            now = utcnow()
            job = await self.store.update_job(
                job.id,
                status=JobStatus.PROCESSING,
                progress=0,
                message="Started",
                started_at=now,
                updated_at=now,
            )
            self._active.add(job.id)

        logger.info(f"Job {job.id} dispatched ({len(self._active)}/{self.max_concurrent_jobs} slots)")
        self._push(job)
        await self._emit(job, "emit_job_started")
        await self._channel.put(job)
        return job

    async def _dispatch_pending(self) -> int:
        claimed = 0
        while await self.dispatch_once() is not None:
            claimed += 1
        return claimed

    def stream(self) -> AsyncIterator[Job]:
        """
        Iterate over claimed jobs.

        Raises:
            RuntimeError: If a consumer is already registered
        """
        if self._consumer_registered:
            raise RuntimeError("JobQueue.stream() already has a consumer")
        self._consumer_registered = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Job]:
        while True:
            job = await self._channel.get()
            if job is None:
                return
            yield job

    async def reap_stalled(self, now: datetime | None = None) -> int:
        """
        Fail PROCESSING jobs that have not been updated within stall_timeout.

        Returns:
            Number of jobs reaped
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.stall_timeout)
        stalled = await self.store.find_stalled(cutoff)

        reaped = 0
        for job in stalled:
            error = StalledJobError(job.id, self.stall_timeout)
            if await self.fail(job.id, error.message):
                logger.warning(f"Reaped stalled job {job.id} (last update {job.updated_at.isoformat()})")
                reaped += 1
        return reaped

    async def get_stats(self) -> dict:
        counts = await self.store.group_jobs_by_status()
        return {
            **counts,
            "active": len(self._active),
            "active_job_ids": sorted(self._active),
            "max_concurrent_jobs": self.max_concurrent_jobs,
        }

    # --- Background loops ------------------------------------------------

    async def _poll_loop(self) -> None:
        while True:
            self._wake.clear()
            try:
                await self._dispatch_pending()
            except Exception:
                logger.exception("Scheduler pass failed")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reaper_interval)
            try:
                await self.reap_stalled()
            except Exception:
                logger.exception("Stall sweep failed")

    async def start(self) -> None:
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())
            self._reaper_task = asyncio.create_task(self._reaper_loop())
            logger.info(f"Job queue started (max {self.max_concurrent_jobs} concurrent jobs)")

    async def stop(self) -> None:
        for task in (self._poll_task, self._reaper_task):
            if task is not None:
                task.cancel()
        for task in (self._poll_task, self._reaper_task):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._poll_task = None
        self._reaper_task = None
        await self._channel.put(None)
        logger.info("Job queue stopped")
