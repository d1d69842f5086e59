"""
Session Pool Module

Two-level pool of browser sessions: a fixed number of browser instances,
each holding a fixed number of sessions (pages). Acquisition blocks on a
semaphore sized to total capacity, so callers never busy-wait.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Protocol

from harvester.config import config
from harvester.stealth.proxy_pool import Proxy, ProxyRotator

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class BrowserInstance:
    """One launched browser and the sessions it hosts."""

    id: str
    handle: Any
    max_sessions: int
    sessions: List["Session"] = field(default_factory=list)
    in_use: int = 0

    @property
    def has_capacity(self) -> bool:
        return self.in_use < self.max_sessions


@dataclass(eq=False)
class Session:
    """A reusable page bound to one instance (and optionally one proxy)."""

    id: str
    instance: BrowserInstance
    handle: Any
    proxy: Optional[Proxy] = None
    in_use: bool = False
    uses: int = 0
    last_used: float = 0.0


class SessionFactory(Protocol):
    """Creates and destroys the underlying browser objects."""

    async def launch_instance(self) -> Any: ...

    async def open_session(self, instance: BrowserInstance, proxy: Optional[Proxy]) -> Any: ...

    async def close_session(self, session: Session) -> None: ...

    async def close_instance(self, instance: BrowserInstance) -> None: ...


class SessionPool:
    """
    Bounded pool of browser sessions.

    Features:
    - Capacity = instances x sessions_per_instance, allocated up front
    - Semaphore-based acquire (no polling)
    - Idempotent release, guaranteed by the session() context manager
    - Teardown tolerates individual close failures

    Example:
        pool = SessionPool(PlaywrightSessionFactory())
        await pool.start()
        async with pool.session() as session:
            html = await loader.load(session, url)
        await pool.close()
    """

    def __init__(
        self,
        factory: SessionFactory,
        instances: int | None = None,
        sessions_per_instance: int | None = None,
        proxy_rotator: ProxyRotator | None = None,
    ):
        """
        Args:
            factory: Creates browsers and pages
            instances: Browser instances to launch (default from config)
            sessions_per_instance: Sessions per instance (default from config)
            proxy_rotator: Assigns a proxy to each session when given
        """
        self._factory = factory
        self._instance_count = instances or config.browser.instances
        self._sessions_per_instance = sessions_per_instance or config.browser.sessions_per_instance
        self._proxy_rotator = proxy_rotator

        self._instances: List[BrowserInstance] = []
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._lock = asyncio.Lock()
        self._started = False
        self._total_acquisitions = 0

    @property
    def capacity(self) -> int:
        return sum(i.max_sessions for i in self._instances)

    async def start(self) -> None:
        """
        Launch instances and open their sessions.

        Raises:
            RuntimeError: If no instance could be launched
        """
        if self._started:
            return

        for i in range(self._instance_count):
            try:
                handle = await self._factory.launch_instance()
            except Exception as e:
                logger.error(f"Failed to launch browser instance {i}: {e}")
                continue

            instance = BrowserInstance(
                id=f"instance-{i}",
                handle=handle,
                max_sessions=0,
            )
            for j in range(self._sessions_per_instance):
                proxy = await self._proxy_rotator.get_next() if self._proxy_rotator else None
                try:
                    page = await self._factory.open_session(instance, proxy)
                except Exception as e:
                    logger.warning(f"Failed to open session {j} on {instance.id}: {e}")
                    continue
                instance.sessions.append(
                    Session(id=f"{instance.id}/session-{j}", instance=instance, handle=page, proxy=proxy)
                )
            instance.max_sessions = len(instance.sessions)

            if instance.max_sessions == 0:
                logger.error(f"Browser instance {instance.id} has no usable sessions")
                await self._close_instance_quietly(instance)
                continue
            self._instances.append(instance)

        if not self._instances:
            raise RuntimeError("Session pool could not launch any browser instance")

        self._semaphore = asyncio.Semaphore(self.capacity)
        self._started = True
        logger.info(
            f"Session pool ready: {len(self._instances)} instances, {self.capacity} sessions"
        )

    async def acquire(self) -> Session:
        """
        Wait for a free session and mark it in use.

        Returns:
            The acquired Session
        """
        if not self._started:
            raise RuntimeError("Session pool is not started")

        await self._semaphore.acquire()
        async with self._lock:
            for instance in self._instances:
                if not instance.has_capacity:
                    continue
                for session in instance.sessions:
                    if not session.in_use:
                        session.in_use = True
                        session.uses += 1
                        session.last_used = time.time()
                        instance.in_use += 1
                        self._total_acquisitions += 1
                        return session

        # Semaphore and counters disagree; give the permit back.
        self._semaphore.release()
        raise RuntimeError("No free session despite available capacity")

    async def release(self, session: Session) -> None:
        """Return a session to the pool. Releasing twice is a no-op."""
        async with self._lock:
            if not session.in_use:
                return
            session.in_use = False
            session.instance.in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        session = await self.acquire()
        try:
            yield session
        finally:
            await self.release(session)

    async def _close_instance_quietly(self, instance: BrowserInstance) -> None:
        try:
            await self._factory.close_instance(instance)
        except Exception as e:
            logger.warning(f"Error closing browser instance {instance.id}: {e}")

    async def close(self) -> None:
        """Close every session, then every instance."""
        for instance in self._instances:
            for session in instance.sessions:
                try:
                    await self._factory.close_session(session)
                except Exception as e:
                    logger.warning(f"Error closing session {session.id}: {e}")
        for instance in self._instances:
            await self._close_instance_quietly(instance)

        logger.info(f"Session pool closed ({len(self._instances)} instances)")
        self._instances = []
        self._semaphore = None
        self._started = False

    def get_stats(self) -> dict:
        in_use = sum(i.in_use for i in self._instances)
        return {
            "instances": len(self._instances),
            "capacity": self.capacity,
            "in_use": in_use,
            "available": self.capacity - in_use,
            "total_acquisitions": self._total_acquisitions,
        }
