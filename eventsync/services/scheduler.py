"""
Drain Scheduler

Runs the retry job drain on a fixed interval inside the web process.
Uses APScheduler's AsyncIOScheduler so the drain shares the app's event loop,
engine and upstream client. ``max_instances=1`` keeps drains from
overlapping when one runs longer than the interval.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .job_runner import JobRunner

logger = logging.getLogger(__name__)

DRAIN_JOB_ID = "retry_job_drain"


class DrainScheduler:
    def __init__(self, runner: JobRunner, interval_seconds: int):
        self.runner = runner
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[Dict] = None

    async def run_drain_job(self) -> None:
        """Job function called by the scheduler."""
        try:
            summary = await self.runner.drain()
        except Exception as e:
            # A failed drain must not unschedule future drains
            logger.exception(f"Scheduled drain failed: {e}")
            self.last_result = {"error": str(e)}
        else:
            self.last_result = summary.to_dict()
        self.last_run_at = datetime.utcnow()

    def start(self) -> bool:
        if self._scheduler is not None and self._scheduler.running:
            logger.warning("Drain scheduler is already running")
            return True

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_drain_job,
            IntervalTrigger(seconds=self.interval_seconds),
            id=DRAIN_JOB_ID,
            name=f"Retry job drain every {self.interval_seconds}s",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Drain scheduler started (every {self.interval_seconds}s)")
        return True

    def stop(self) -> bool:
        if self._scheduler is None:
            return True
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Drain scheduler stopped")
        return True

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def status(self) -> Dict:
        status = {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "next_run": None,
            "last_run": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result,
        }
        if self.running:
            job = self._scheduler.get_job(DRAIN_JOB_ID)
            if job is not None and job.next_run_time:
                status["next_run"] = job.next_run_time.isoformat()
        return status
