"""
SQLite Job Store Module

Persists jobs and listings with aiosqlite so queued work survives restarts.
Listings are upserted by listing id (INSERT OR IGNORE).
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from harvester.config import config
from harvester.models import BusinessListing, Job, JobPriority, JobResult, JobStatus

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    filters TEXT NOT NULL,
    priority INTEGER NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    message TEXT NOT NULL DEFAULT '',
    max_records INTEGER NOT NULL,
    enable_webhooks INTEGER NOT NULL DEFAULT 0,
    result TEXT,
    error TEXT,
    created_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL,
    updated_at REAL NOT NULL,
    sequence INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_dispatch ON jobs (status, priority DESC, created_at, sequence);
CREATE TABLE IF NOT EXISTS listings (
    listing_id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    scraped_at REAL NOT NULL
);
"""

_DATETIME_FIELDS = {"created_at", "started_at", "completed_at", "updated_at"}


def _to_ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value else None


def _from_ts(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


class SQLiteJobStore:
    """
    JobStore backed by a SQLite database file.

    Example:
        store = SQLiteJobStore("storage/harvester.db")
        await store.create_job(job)
        nxt = await store.find_next_pending()
        await store.close()
    """

    def __init__(self, db_path: Path | str | None = None):
        """
        Args:
            db_path: Database file (default from config)
        """
        self._db_path = Path(db_path) if db_path else config.storage.database_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self._db_path)
            self._db.row_factory = aiosqlite.Row
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        return self._db

    def _row_to_job(self, row: aiosqlite.Row) -> Job:
        result = json.loads(row["result"]) if row["result"] else None
        return Job(
            id=row["id"],
            filters=json.loads(row["filters"]),
            priority=JobPriority(row["priority"]),
            status=JobStatus(row["status"]),
            progress=row["progress"],
            message=row["message"],
            max_records=row["max_records"],
            enable_webhooks=bool(row["enable_webhooks"]),
            result=JobResult(**result) if result else None,
            error=row["error"],
            created_at=_from_ts(row["created_at"]),
            started_at=_from_ts(row["started_at"]),
            completed_at=_from_ts(row["completed_at"]),
            updated_at=_from_ts(row["updated_at"]),
            sequence=row["sequence"],
        )

    def _column_value(self, key: str, value: Any) -> Any:
        if key in _DATETIME_FIELDS:
            return _to_ts(value)
        if key == "status":
            return value.value
        if key == "priority":
            return int(value)
        if key == "filters":
            return json.dumps(value, default=str)
        if key == "result":
            return json.dumps(value.to_dict()) if value else None
        if key == "enable_webhooks":
            return int(value)
        return value

    async def create_job(self, job: Job) -> Job:
        async with self._lock:
            db = await self._conn()
            await db.execute(
                """
                INSERT INTO jobs (id, filters, priority, status, progress, message, max_records,
                                  enable_webhooks, result, error, created_at, started_at,
                                  completed_at, updated_at, sequence)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    json.dumps(job.filters, default=str),
                    int(job.priority),
                    job.status.value,
                    job.progress,
                    job.message,
                    job.max_records,
                    int(job.enable_webhooks),
                    json.dumps(job.result.to_dict()) if job.result else None,
                    job.error,
                    _to_ts(job.created_at),
                    _to_ts(job.started_at),
                    _to_ts(job.completed_at),
                    _to_ts(job.updated_at),
                    job.sequence,
                ),
            )
            await db.commit()
        return job

    async def update_job(self, job_id: str, **fields: Any) -> Optional[Job]:
        columns = []
        values = []
        for key, value in fields.items():
            if key not in Job.__dataclass_fields__:
                raise AttributeError(f"Job has no field '{key}'")
            columns.append(f"{key} = ?")
            values.append(self._column_value(key, value))

        async with self._lock:
            db = await self._conn()
            if columns:
                await db.execute(
                    f"UPDATE jobs SET {', '.join(columns)} WHERE id = ?",
                    (*values, job_id),
                )
                await db.commit()
            async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cursor:
                row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def find_job(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            db = await self._conn()
            async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cursor:
                row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def find_next_pending(self) -> Optional[Job]:
        async with self._lock:
            db = await self._conn()
            async with db.execute(
                """
                SELECT * FROM jobs WHERE status = ?
                ORDER BY priority DESC, created_at ASC, sequence ASC
                LIMIT 1
                """,
                (JobStatus.PENDING.value,),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def find_stalled(self, before: datetime) -> List[Job]:
        async with self._lock:
            db = await self._conn()
            async with db.execute(
                "SELECT * FROM jobs WHERE status = ? AND updated_at < ?",
                (JobStatus.PROCESSING.value, before.timestamp()),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def group_jobs_by_status(self) -> Dict[str, int]:
        counts = {status.value.lower(): 0 for status in JobStatus}
        async with self._lock:
            db = await self._conn()
            async with db.execute("SELECT status, COUNT(id) FROM jobs GROUP BY status") as cursor:
                async for status, count in cursor:
                    counts[status.lower()] = count
        return counts

    async def create_records_if_absent(self, listings: List[BusinessListing]) -> int:
        if not listings:
            return 0
        inserted = 0
        async with self._lock:
            db = await self._conn()
            for listing in listings:
                cursor = await db.execute(
                    "INSERT OR IGNORE INTO listings (listing_id, data, scraped_at) VALUES (?, ?, ?)",
                    (listing.listing_id, listing.model_dump_json(), listing.scraped_at),
                )
                inserted += cursor.rowcount
                await cursor.close()
            await db.commit()
        logger.debug(f"Upserted {inserted}/{len(listings)} listings")
        return inserted

    async def list_records(self) -> List[BusinessListing]:
        async with self._lock:
            db = await self._conn()
            async with db.execute("SELECT data FROM listings ORDER BY scraped_at") as cursor:
                rows = await cursor.fetchall()
        return [BusinessListing.model_validate_json(row["data"]) for row in rows]

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
