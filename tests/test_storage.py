"""
Tests for the job stores.

Both stores implement the same contract, so every test runs against each.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from harvester.models import BusinessListing, Job, JobPriority, JobResult, JobStatus, utcnow
from harvester.storage.sqlite_store import SQLiteJobStore
from harvester.store import MemoryJobStore


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "memory":
        backend = MemoryJobStore()
    else:
        backend = SQLiteJobStore(tmp_path / "jobs.db")
    yield backend
    await backend.close()


def make_listing(listing_id: str, title: str = "Corner Bakery") -> BusinessListing:
    return BusinessListing(listing_id=listing_id, title=title, location="Austin, TX", state="TX")


class TestJobs:
    """Tests for job persistence."""

    @pytest.mark.asyncio
    async def test_create_and_find(self, store):
        job = Job(filters={"industry": ["Retail"]}, priority=JobPriority.HIGH, max_records=50)
        await store.create_job(job)

        found = await store.find_job(job.id)
        assert found.id == job.id
        assert found.filters == {"industry": ["Retail"]}
        assert found.priority == JobPriority.HIGH
        assert found.status == JobStatus.PENDING
        assert found.max_records == 50
        assert await store.find_job("missing") is None

    @pytest.mark.asyncio
    async def test_update_with_result(self, store):
        """Test that results and timestamps survive an update."""
        job = await store.create_job(Job(filters={"industry": ["Retail"]}))
        finished = utcnow()
        result = JobResult(success=True, records_found=3, records_saved=2, duplicates=1)

        updated = await store.update_job(
            job.id, status=JobStatus.COMPLETED, progress=100, result=result, completed_at=finished,
        )
        assert updated.status == JobStatus.COMPLETED
        assert updated.result.records_saved == 2
        assert updated.completed_at.timestamp() == pytest.approx(finished.timestamp())

    @pytest.mark.asyncio
    async def test_update_unknown_field(self, store):
        job = await store.create_job(Job(filters={}))
        with pytest.raises(AttributeError):
            await store.update_job(job.id, colour="blue")

    @pytest.mark.asyncio
    async def test_next_pending_order(self, store):
        """Test dispatch order: priority first, then oldest."""
        now = utcnow()
        low = Job(filters={}, priority=JobPriority.LOW, created_at=now - timedelta(seconds=30))
        old = Job(filters={}, priority=JobPriority.HIGH, created_at=now - timedelta(seconds=10))
        new = Job(filters={}, priority=JobPriority.HIGH, created_at=now)
        for job in (new, low, old):
            await store.create_job(job)

        assert (await store.find_next_pending()).id == old.id
        await store.update_job(old.id, status=JobStatus.PROCESSING)
        assert (await store.find_next_pending()).id == new.id

    @pytest.mark.asyncio
    async def test_find_stalled(self, store):
        """Test that only PROCESSING jobs idle past the cutoff are returned."""
        now = utcnow()
        stale = await store.create_job(Job(filters={}))
        fresh = await store.create_job(Job(filters={}))
        await store.update_job(stale.id, status=JobStatus.PROCESSING, updated_at=now - timedelta(minutes=20))
        await store.update_job(fresh.id, status=JobStatus.PROCESSING, updated_at=now)

        stalled = await store.find_stalled(now - timedelta(minutes=10))
        assert [job.id for job in stalled] == [stale.id]

    @pytest.mark.asyncio
    async def test_group_by_status(self, store):
        first = await store.create_job(Job(filters={}))
        await store.create_job(Job(filters={}))
        await store.update_job(first.id, status=JobStatus.FAILED)

        counts = await store.group_jobs_by_status()
        assert counts["pending"] == 1
        assert counts["failed"] == 1
        assert counts["completed"] == 0


class TestListings:
    """Tests for listing upserts."""

    @pytest.mark.asyncio
    async def test_insert_if_absent(self, store):
        """Test that existing listing ids are skipped."""
        assert await store.create_records_if_absent([make_listing("A1"), make_listing("B2")]) == 2
        assert await store.create_records_if_absent([make_listing("A1", "Renamed"), make_listing("C3")]) == 1

        records = await store.list_records()
        assert sorted(r.listing_id for r in records) == ["A1", "B2", "C3"]
        assert next(r for r in records if r.listing_id == "A1").title == "Corner Bakery"

    @pytest.mark.asyncio
    async def test_empty_batch(self, store):
        assert await store.create_records_if_absent([]) == 0
