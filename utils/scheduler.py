"""
Interval scheduler for the price dumping agent, built on APScheduler.
"""

import asyncio
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from agents.price_dumping import PriceDumpingAgent
from config.config import SchedulerConfig
from models.pricing import CycleReport

logger = logging.getLogger(__name__)

JOB_ID = "price-dumping-cycle"


class RepricingScheduler:
    """
    Triggers ``agent.run_cycle()`` every ``cycle_interval_minutes``.

    Ticks never overlap: APScheduler runs at most one instance of the job and
    coalesces missed ticks, and the agent itself refuses a second concurrent
    cycle.
    """

    def __init__(
        self,
        agent: PriceDumpingAgent,
        config: SchedulerConfig | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ):
        self.agent = agent
        self.config = config or SchedulerConfig()
        self.scheduler = scheduler or AsyncIOScheduler()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def _scheduled_cycle(self) -> None:
        try:
            await self.agent.run_cycle()
        except Exception:
            logger.exception("Scheduled price dumping cycle failed")

    def start(self) -> None:
        """Register the interval job and start the scheduler (needs a running event loop)."""
        next_run = datetime.now() if self.config.run_on_start else None
        job_kwargs = {"next_run_time": next_run} if next_run else {}
        self.scheduler.add_job(
            self._scheduled_cycle,
            "interval",
            minutes=self.config.cycle_interval_minutes,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **job_kwargs,
        )
        self.scheduler.start()
        logger.info(
            f"Scheduler started with interval={self.config.cycle_interval_minutes} minutes"
        )

    async def trigger_now(self) -> CycleReport:
        """Run a cycle immediately, outside the interval."""
        return await self.agent.run_cycle()

    async def shutdown(self) -> None:
        """Signal the agent and stop the scheduler.

        AsyncIOScheduler queues its shutdown on the event loop, so yield once
        before returning to let it take effect.
        """
        logger.info("Stopping price dumping scheduler")
        self.agent.request_shutdown()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            await asyncio.sleep(0)
