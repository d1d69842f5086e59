"""
Core data models.

Jobs and their results are plain dataclasses owned by the queue and store.
Filter specifications and canonical listings are Pydantic models so that
validation errors carry field-level detail.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from harvester.errors import FilterValidationError


class JobPriority(IntEnum):
    """Job priority tiers (higher value = dispatched first)."""
    LOW = 0
    NORMAL = 1
    HIGH = 2


class JobStatus(Enum):
    """Job lifecycle states."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}

# Allowed forward transitions. CANCELLED -> PENDING is the explicit resume path.
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.CANCELLED: {JobStatus.PENDING},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass
class JobResult:
    """Summary of a finished job run."""

    success: bool
    records_found: int = 0
    records_saved: int = 0
    pages_processed: int = 0
    attempts: int = 0
    duplicates: int = 0
    failed: int = 0
    warnings: int = 0
    duration: float = 0.0
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


_sequence = 0


def _next_sequence() -> int:
    global _sequence
    _sequence += 1
    return _sequence


@dataclass
class Job:
    """One scheduled extraction run."""

    filters: Dict[str, Any]
    priority: JobPriority = JobPriority.NORMAL
    max_records: int = 1000
    enable_webhooks: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    message: str = ""
    result: Optional[JobResult] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)
    # Tiebreaker for jobs created within the same clock tick
    sequence: int = field(default_factory=_next_sequence)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def sort_key(self) -> tuple:
        """Dispatch order: priority descending, then FIFO."""
        return (-int(self.priority), self.created_at, self.sequence)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filters": self.filters,
            "priority": self.priority.name,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "max_records": self.max_records,
            "enable_webhooks": self.enable_webhooks,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "updated_at": self.updated_at.isoformat(),
        }


# --- Filter specification -------------------------------------------------

class _FilterModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class MoneyRange(_FilterModel):
    min: Optional[float] = Field(default=None, ge=0, le=100_000_000)
    max: Optional[float] = Field(default=None, ge=0, le=100_000_000)

    @model_validator(mode="after")
    def _check_order(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("Minimum must be less than or equal to maximum")
        return self


class CashFlowRange(MoneyRange):
    min: Optional[float] = Field(default=None, ge=-10_000_000, le=50_000_000)
    max: Optional[float] = Field(default=None, ge=-10_000_000, le=50_000_000)


class YearRange(_FilterModel):
    min: Optional[int] = Field(default=None, ge=1800)
    max: Optional[int] = Field(default=None, ge=1800)

    @model_validator(mode="after")
    def _check_years(self):
        current = date.today().year
        for value in (self.min, self.max):
            if value is not None and value > current:
                raise ValueError(f"Year {value} is in the future")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("Minimum established year must be less than or equal to maximum")
        return self


class DateRange(_FilterModel):
    from_date: Optional[date] = Field(default=None, alias="from")
    to_date: Optional[date] = Field(default=None, alias="to")

    @model_validator(mode="after")
    def _check_order(self):
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("From date must be before or equal to to date")
        return self


class LocationFilter(_FilterModel):
    states: List[str] = Field(default_factory=list)
    cities: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_location(self):
        if not self.states and not self.cities:
            raise ValueError("At least one state or city must be specified")
        self.states = [s.strip().upper() for s in self.states]
        for state in self.states:
            if len(state) != 2 or not state.isalpha():
                raise ValueError(f"Invalid state code: {state!r}")
        return self


def _amount(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class FilterSpec(_FilterModel):
    """
    Search filters for one job.

    The queue validates filters at submission time; the core otherwise treats
    them as opaque and only turns them into a search URL.
    """

    location: Optional[LocationFilter] = None
    price: Optional[MoneyRange] = None
    revenue: Optional[MoneyRange] = None
    cash_flow: Optional[CashFlowRange] = None
    industry: Optional[List[str]] = Field(default=None, max_length=10)
    listing_date: Optional[DateRange] = None
    seller_financing: Optional[bool] = None
    established: Optional[YearRange] = None

    @model_validator(mode="after")
    def _require_one(self):
        if not self.model_dump(exclude_none=True, exclude_defaults=True):
            raise ValueError("At least one filter must be provided")
        return self

    @classmethod
    def parse(cls, filters: Dict[str, Any]) -> "FilterSpec":
        """Validate a raw filter dict, raising FilterValidationError."""
        if not isinstance(filters, dict):
            raise FilterValidationError("Filters must be an object")
        try:
            return cls.model_validate(filters)
        except ValidationError as e:
            issues = [
                f"{'.'.join(str(loc) for loc in err['loc']) or 'filters'}: {err['msg']}"
                for err in e.errors()
            ]
            raise FilterValidationError(f"Invalid filters: {'; '.join(issues)}", issues) from e

    def to_query(self) -> Dict[str, str]:
        query: Dict[str, str] = {}
        if self.location:
            if self.location.states:
                query["state"] = ",".join(self.location.states)
            if self.location.cities:
                query["city"] = ",".join(self.location.cities)
        for name, rng in (("price", self.price), ("revenue", self.revenue), ("cashflow", self.cash_flow)):
            if rng is None:
                continue
            if rng.min is not None:
                query[f"{name}_min"] = _amount(rng.min)
            if rng.max is not None:
                query[f"{name}_max"] = _amount(rng.max)
        if self.industry:
            query["industry"] = ",".join(self.industry)
        if self.listing_date:
            if self.listing_date.from_date:
                query["listed_from"] = self.listing_date.from_date.isoformat()
            if self.listing_date.to_date:
                query["listed_to"] = self.listing_date.to_date.isoformat()
        if self.seller_financing is not None:
            query["seller_financing"] = "1" if self.seller_financing else "0"
        if self.established:
            if self.established.min is not None:
                query["established_min"] = str(self.established.min)
            if self.established.max is not None:
                query["established_max"] = str(self.established.max)
        return query

    def to_search_url(self, base_url: str) -> str:
        query = urlencode(self.to_query())
        if not query:
            return base_url
        separator = "&" if "?" in base_url else "?"
        return f"{base_url}{separator}{query}"


# --- Canonical listing -----------------------------------------------------

class BusinessListing(BaseModel):
    """Validated business-for-sale listing keyed by its source listing id."""

    listing_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    location: str = Field(min_length=1)
    state: str = "unknown"
    city: Optional[str] = None
    industry: str = "other"
    description: str = ""
    listed_date: date = Field(default_factory=date.today)
    asking_price: Optional[float] = None
    revenue: Optional[float] = None
    cash_flow: Optional[float] = None
    seller_financing: bool = False
    employees: Optional[int] = None
    established: Optional[int] = None
    features: List[str] = Field(default_factory=list)
    image_urls: List[str] = Field(default_factory=list)
    listing_url: Optional[str] = None
    scraped_at: float = Field(default_factory=time.time)
