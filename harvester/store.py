"""
Persistence collaborator.

The queue and orchestrator only talk to a JobStore. MemoryJobStore is the
in-process implementation; SQLiteJobStore lives in harvester.storage.
"""

import asyncio
import copy
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from harvester.models import BusinessListing, Job, JobStatus


class JobStore(Protocol):
    """Operations the core needs from persistence."""

    async def create_job(self, job: Job) -> Job: ...

    async def update_job(self, job_id: str, **fields: Any) -> Optional[Job]: ...

    async def find_job(self, job_id: str) -> Optional[Job]: ...

    async def find_next_pending(self) -> Optional[Job]: ...

    async def find_stalled(self, before: datetime) -> List[Job]: ...

    async def group_jobs_by_status(self) -> Dict[str, int]: ...

    async def create_records_if_absent(self, listings: List[BusinessListing]) -> int: ...

    async def list_records(self) -> List[BusinessListing]: ...

    async def close(self) -> None: ...


class MemoryJobStore:
    """
    In-memory job and listing store.

    Returns copies so callers never mutate stored state without going
    through update_job.
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._listings: Dict[str, BusinessListing] = {}
        self._lock = asyncio.Lock()

    async def create_job(self, job: Job) -> Job:
        async with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
            return copy.deepcopy(job)

    async def update_job(self, job_id: str, **fields: Any) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            for key, value in fields.items():
                if not hasattr(job, key):
                    raise AttributeError(f"Job has no field '{key}'")
                setattr(job, key, value)
            return copy.deepcopy(job)

    async def find_job(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    async def find_next_pending(self) -> Optional[Job]:
        async with self._lock:
            pending = [j for j in self._jobs.values() if j.status == JobStatus.PENDING]
            if not pending:
                return None
            return copy.deepcopy(min(pending, key=Job.sort_key))

    async def find_stalled(self, before: datetime) -> List[Job]:
        async with self._lock:
            return [
                copy.deepcopy(j)
                for j in self._jobs.values()
                if j.status == JobStatus.PROCESSING and j.updated_at < before
            ]

    async def group_jobs_by_status(self) -> Dict[str, int]:
        async with self._lock:
            counts = {status.value.lower(): 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value.lower()] += 1
            return counts

    async def create_records_if_absent(self, listings: List[BusinessListing]) -> int:
        inserted = 0
        async with self._lock:
            for listing in listings:
                if listing.listing_id in self._listings:
                    continue
                self._listings[listing.listing_id] = listing.model_copy()
                inserted += 1
        return inserted

    async def list_records(self) -> List[BusinessListing]:
        async with self._lock:
            return [l.model_copy() for l in self._listings.values()]

    async def close(self) -> None:
        pass
