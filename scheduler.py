import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from client import ClientRegistry
from config import get_settings


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self, registry: ClientRegistry, interval_secs: Optional[float] = None
    ) -> None:
        settings = get_settings()
        self.registry = registry
        self.timezone = settings.timezone
        self.interval_secs = interval_secs or settings.cache_sweep_secs
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def _run_job(self, source: str = "manual") -> int:
        removed = self.registry.sweep()
        logger.info(
            f"cache_sweep: source={source} clients={len(self.registry)} removed={removed}"
        )
        return removed

    def start(self) -> None:
        # bound to the loop that serves the app, so start() must run inside it
        self.scheduler = AsyncIOScheduler(
            timezone=self.timezone, event_loop=asyncio.get_running_loop()
        )
        trigger = IntervalTrigger(seconds=self.interval_secs)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="cache_sweep",
            replace_existing=True,
            misfire_grace_time=30,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with cache sweep every {self.interval_secs}s")

    def stop(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self.scheduler = None
