"""
Shared fakes for the harvester tests.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from harvester.extraction import SelectorExtractor
from harvester.orchestrator import Orchestrator
from harvester.pool.session_pool import SessionPool
from harvester.queue_manager import JobQueue
from harvester.realtime import RecordingNotifier
from harvester.safety.circuit_breaker import CircuitBreaker
from harvester.safety.rate_limiter import SlidingWindowRateLimiter
from harvester.safety.retry import RetryHandler, RetryPolicy
from harvester.store import MemoryJobStore

SEARCH_URL = "https://listings.example.com/search"


async def no_sleep(seconds: float) -> None:
    """Stand-in for asyncio.sleep that only yields control."""
    await asyncio.sleep(0)


class FakeSessionFactory:
    """In-memory SessionFactory recording what it was asked to do."""

    def __init__(self, fail_launches: int = 0, fail_close: bool = False):
        self.launched = 0
        self.opened: List[Any] = []
        self.closed_sessions: List[str] = []
        self.closed_instances: List[str] = []
        self._fail_launches = fail_launches
        self._fail_close = fail_close

    async def launch_instance(self) -> Any:
        if self._fail_launches:
            self._fail_launches -= 1
            raise RuntimeError("browser failed to launch")
        self.launched += 1
        return {"browser": self.launched}

    async def open_session(self, instance, proxy) -> Any:
        self.opened.append(proxy)
        return {"page": len(self.opened), "instance": instance.id}

    async def close_session(self, session) -> None:
        if self._fail_close:
            raise RuntimeError("page already closed")
        self.closed_sessions.append(session.id)

    async def close_instance(self, instance) -> None:
        self.closed_instances.append(instance.id)


class ScriptedLoader:
    """
    Page loader with scripted outcomes.

    Outcomes are matched by URL substring (first match wins). Each call
    consumes one outcome; the last one repeats. Exceptions are raised.
    """

    def __init__(self, pages: Dict[str, Sequence[Any]] | None = None, default: Any = None):
        self.pages = {marker: list(outcomes) for marker, outcomes in (pages or {}).items()}
        self.default = default
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def load(self, session, url: str) -> str:
        self.calls.append(url)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()

        outcome = self.default
        for marker, outcomes in self.pages.items():
            if marker in url:
                outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
                break

        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def listing_card(
    listing_id: str,
    title: str = "Busy Downtown Cafe",
    location: str = "Austin, TX",
    asking_price: str = "$250,000",
    revenue: str = "$900,000",
    cash_flow: str = "$120,000",
    industry: str = "Restaurant",
    description: str = "Well established cafe with loyal customers.",
) -> str:
    return f"""
    <div class="listing" data-listing-id="{listing_id}">
      <h3 class="title">{title}</h3>
      <span class="location">{location}</span>
      <span class="asking-price">{asking_price}</span>
      <span class="revenue">{revenue}</span>
      <span class="cash-flow">{cash_flow}</span>
      <span class="industry">{industry}</span>
      <p class="description">{description}</p>
      <ul class="features"><li>Seller Financing</li></ul>
    </div>
    """


def results_page(cards: Sequence[str], next_href: str | None = None, total: int | None = None) -> str:
    count = f'<p class="result-count">{total} results</p>' if total is not None else ""
    nxt = f'<li class="next"><a href="{next_href}">Next</a></li>' if next_href else ""
    return f"""
    <html><body>
      {count}
      <div class="search-results">{''.join(cards)}</div>
      <ul class="pagination"><li class="active">1</li>{nxt}</ul>
    </body></html>
    """


@dataclass
class Harness:
    """A queue and orchestrator wired to fakes."""

    queue: JobQueue
    orchestrator: Orchestrator
    store: MemoryJobStore
    notifier: RecordingNotifier
    pool: SessionPool
    factory: FakeSessionFactory

    async def start(self) -> None:
        await self.orchestrator.start()
        await self.queue.start()

    async def stop(self) -> None:
        await self.queue.stop()
        await self.orchestrator.stop()
        await self.pool.close()


async def build_harness(
    loader: Any,
    max_concurrent_jobs: int = 1,
    webhooks: Any = None,
    max_retries: int = 3,
    max_pages: int = 10,
    failure_threshold: int = 5,
) -> Harness:
    store = MemoryJobStore()
    notifier = RecordingNotifier()
    queue = JobQueue(
        store=store,
        notifier=notifier,
        webhooks=webhooks,
        max_concurrent_jobs=max_concurrent_jobs,
        poll_interval=0.01,
        stall_timeout=600,
        reaper_interval=600,
    )
    factory = FakeSessionFactory()
    pool = SessionPool(factory, instances=1, sessions_per_instance=max_concurrent_jobs)
    await pool.start()

    orchestrator = Orchestrator(
        queue=queue,
        pool=pool,
        loader=loader,
        extractor=SelectorExtractor(),
        store=store,
        rate_limiter=SlidingWindowRateLimiter(
            max_requests=1000, window_seconds=60, min_delay=0, max_delay=0, sleep=no_sleep,
        ),
        retry_handler=RetryHandler(
            policy=RetryPolicy(max_retries=max_retries, base_delay=0.01, max_delay=0.05),
            sleep=no_sleep,
        ),
        circuit_breaker=CircuitBreaker(failure_threshold=failure_threshold, reset_timeout=60),
        webhooks=webhooks,
        max_pages=max_pages,
        search_url=SEARCH_URL,
    )
    return Harness(queue, orchestrator, store, notifier, pool, factory)
