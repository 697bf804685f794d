"""Triggers that start sync passes.

Passes are started (a) once shortly after startup when online, (b) on
every offline -> online transition, and (c) on a periodic timer while
online, the engine is idle, and there is work to do. The timer and the
connectivity source are injected; :class:`APSchedulerTimer` drives the
timer with APScheduler in production and :class:`ManualTimer` lets tests
fire ticks deterministically.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .connectivity import ConnectivitySignal
from .engine import SleepFunc, SyncEngine, SyncPassReport
from .transport import IngestionTransport

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[Any]]

PERIODIC_JOB_ID = "reportsync-periodic-sync"


class IntervalTimer(Protocol):
    def start(self, callback: TickCallback, interval_seconds: float) -> None:
        ...

    def stop(self) -> None:
        ...


class APSchedulerTimer:
    """Periodic timer backed by APScheduler's asyncio scheduler."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, callback: TickCallback, interval_seconds: float) -> None:
        if self.running:
            return
        loop = self._loop or asyncio.get_running_loop()
        self._scheduler = AsyncIOScheduler(event_loop=loop)
        self._scheduler.add_job(
            callback,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=PERIODIC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None


class ManualTimer:
    """Timer whose ticks are fired explicitly with :meth:`tick`."""

    def __init__(self) -> None:
        self._callback: Optional[TickCallback] = None
        self.interval_seconds: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._callback is not None

    def start(self, callback: TickCallback, interval_seconds: float) -> None:
        self._callback = callback
        self.interval_seconds = interval_seconds

    def stop(self) -> None:
        self._callback = None

    async def tick(self) -> None:
        if self._callback is not None:
            await self._callback()


class SyncScheduler:
    """Starts sync passes from startup, connectivity and timer events."""

    def __init__(
        self,
        engine: SyncEngine,
        connectivity: ConnectivitySignal,
        transport: IngestionTransport,
        *,
        timer: Optional[IntervalTimer] = None,
        interval_seconds: float = 30.0,
        initial_delay_seconds: float = 2.0,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._connectivity = connectivity
        self._transport = transport
        self._timer = timer or APSchedulerTimer()
        self._interval = interval_seconds
        self._initial_delay = initial_delay_seconds
        self._sleep = sleep
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        await self._refresh_connectivity()
        self._unsubscribe = self._connectivity.on_change(self._on_connectivity_change)
        self._timer.start(self._on_tick, self._interval)
        self._running = True

        if self._connectivity.is_online():
            self._spawn(self._initial_pass())
        logger.info(
            "Sync scheduler started",
            extra={"interval_seconds": self._interval, "online": self._connectivity.is_online()},
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._timer.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._running = False

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Sync scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait until every pass started by the scheduler has finished."""
        await asyncio.sleep(0)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await asyncio.sleep(0)

    async def _initial_pass(self) -> SyncPassReport:
        if self._initial_delay > 0:
            await self._sleep(self._initial_delay)
        return await self._engine.run_pass(self._transport)

    def _on_connectivity_change(self, online: bool) -> None:
        if not self._running or self._loop is None:
            return
        if not online:
            logger.info("Gone offline, reports will be queued")
            return
        logger.info("Back online, processing offline queue")
        # May be called from a thread other than the event loop's
        self._loop.call_soon_threadsafe(self._spawn_pass)

    def _spawn_pass(self) -> None:
        if self._running:
            self._spawn(self._engine.run_pass(self._transport))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        assert self._loop is not None
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _refresh_connectivity(self) -> None:
        refresh = getattr(self._connectivity, "refresh", None)
        if refresh is not None:
            await refresh()

    async def _on_tick(self) -> None:
        await self._refresh_connectivity()

        if not self._connectivity.is_online() or self._engine.is_syncing:
            return
        if not self._engine.has_pending_work():
            return
        logger.debug("Periodic sync check found pending items")
        await self._engine.run_pass(self._transport)


__all__ = [
    "APSchedulerTimer",
    "IntervalTimer",
    "ManualTimer",
    "PERIODIC_JOB_ID",
    "SyncScheduler",
    "TickCallback",
]
