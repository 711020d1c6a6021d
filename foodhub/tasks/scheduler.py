"""
Foodhub - In-process periodic jobs

    heartbeat          every WS_HEARTBEAT_INTERVAL_SECONDS        registry.heartbeat_tick()
    token-sweep        every DEVICE_SWEEP_INTERVAL_SECONDS        device_store.sweep_expired()
    auto-cancel        every AUTO_CANCEL_WATCHDOG_INTERVAL_SECONDS lifecycle.cancel_stale_orders()
    opening-time       every OPENING_TIME_WATCH_INTERVAL_SECONDS  open_scheduled_restaurants()

Each job is one task that awaits the job body and then sleeps, so a tick
never overlaps the previous one. run_once() lets callers trigger a job
out of band; it is skipped while the same job is already running.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from foodhub.core.config import get_settings
from foodhub.db.database import SessionLocal, utcnow
from foodhub.db.restaurant_ops import open_scheduled_restaurants

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class PeriodicJob:
    name: str
    interval: float
    func: Callable[[], Awaitable[Any]]


class Scheduler:
    def __init__(self, jobs: list[PeriodicJob] | None = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self._jobs: dict[str, PeriodicJob] = {job.name: job for job in jobs or []}
        self._sleep = sleep
        self._running: set[str] = set()
        self._tasks: list[asyncio.Task] = []

    def add(self, job: PeriodicJob) -> None:
        self._jobs[job.name] = job

    @property
    def jobs(self) -> list[str]:
        return list(self._jobs)

    async def run_once(self, name: str) -> bool:
        """Run a job now. Returns False when skipped because it is still running."""
        job = self._jobs[name]
        if name in self._running:
            logger.debug("Job %s still running, skipping tick", name)
            return False
        self._running.add(name)
        try:
            result = await job.func()
            logger.debug("Job %s finished: %s", name, result)
        except Exception:
            logger.exception("Job %s failed", name)
        finally:
            self._running.discard(name)
        return True

    async def _loop(self, job: PeriodicJob) -> None:
        while True:
            await self._sleep(job.interval)
            await self.run_once(job.name)

    def start(self) -> None:
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"job:{job.name}"))
        logger.info("Scheduler started: %s", ", ".join(self._jobs))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def build_scheduler(registry, device_store, lifecycle,
                    session_factory=SessionLocal, clock=utcnow) -> Scheduler:
    return Scheduler([
        PeriodicJob("heartbeat", settings.WS_HEARTBEAT_INTERVAL_SECONDS, registry.heartbeat_tick),
        PeriodicJob("token-sweep", settings.DEVICE_SWEEP_INTERVAL_SECONDS, device_store.sweep_expired),
        PeriodicJob("auto-cancel", settings.AUTO_CANCEL_WATCHDOG_INTERVAL_SECONDS,
                    lifecycle.cancel_stale_orders),
        PeriodicJob("opening-time", settings.OPENING_TIME_WATCH_INTERVAL_SECONDS,
                    lambda: open_scheduled_restaurants(session_factory, clock())),
    ])
