from __future__ import annotations

import logging
from typing import Optional

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .config import settings
from .services.expiration_service import ExpirationSweeper


logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "credit_expiration_sweep"


class ExpirationScheduler:
    """
    Runs the expiration sweep on a daily cron schedule (UTC).

    Owned by the process bootstrap: call `start()` once the event loop is
    running and `shutdown()` on exit. Overlapping runs are never started.
    """

    def __init__(
        self,
        sweeper: ExpirationSweeper,
        hour: int = settings.EXPIRATION_SWEEP_HOUR,
        minute: int = settings.EXPIRATION_SWEEP_MINUTE,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self._sweeper = sweeper
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._job: Job = self._scheduler.add_job(
            self._run,
            "cron",
            hour=hour,
            minute=minute,
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    @property
    def job(self) -> Job:
        return self._job

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def _run(self) -> None:
        logger.info("Running credit expiration sweep...")
        report = await self._sweeper.run_expiration_sweep()
        if report.skipped:
            logger.info("Credit expiration sweep skipped: previous run still active")
            return
        logger.info(
            "Credit expiration sweep completed: %d entries retired, %s credits expired, %d failed",
            report.retired_entries,
            report.retired_credits,
            len(report.failed_entries),
        )

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Credit expiration scheduler started")

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Credit expiration scheduler stopped")
