"""
Retry Job Runner

Drains due RetryJobs. Each drain claims up to ``JOBS_PER_DRAIN`` jobs and
runs them concurrently, bounded by ``WORKER_POOL_SIZE``, every job in its own
session so one failure never rolls back another.

A job's handler work and its outcome commit together. On failure the work is
rolled back first, then the attempt is recorded.
"""

import asyncio
import os
import socket
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, settings as default_settings
from ..errors import DependencyNotYetAvailable, UnknownJobStage
from ..models import JobOutcome, JobStage, JobStatus, RetryJob
from ..utils.logging_config import clear_context, get_logger, set_job_context
from .deferred_linker import DeferredLinker
from .retry_queue import RetryQueue
from .webhook_processor import IngestionPipeline

logger = get_logger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class DrainSummary:
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "failed": self.failed,
            "errors": self.errors[:20],
            "duration_ms": self.duration_ms,
        }


@dataclass
class JobContext:
    """Snapshot of a claimed job, taken before any handler runs."""
    id: str
    correlation_id: str
    stage: str
    organization_id: Optional[str]
    payload: dict
    attempts: int
    max_attempts: int

    @property
    def final_attempt(self) -> bool:
        return self.attempts + 1 >= self.max_attempts


Handler = Callable[[AsyncSession, JobContext], Awaitable[JobOutcome]]


class JobRunner:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Optional[Settings] = None,
        pipeline: Optional[IngestionPipeline] = None,
        owner: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.pipeline = pipeline or IngestionPipeline(session_factory, self.settings)
        self.owner = owner or default_owner()
        self._handlers: Dict[str, Handler] = {
            JobStage.LINK_PAYMENT.value: self._link_payment,
            JobStage.LINK_ORDER.value: self._link_order,
            JobStage.FETCH_ORDER.value: self._fetch_order,
            JobStage.FETCH_BOOKING.value: self._fetch_booking,
            JobStage.SYNC_GIFT_CARD.value: self._sync_gift_card,
        }

    async def drain(self, limit: Optional[int] = None) -> DrainSummary:
        """Claim and run due jobs; returns counts by final status."""
        start = time.time()
        summary = DrainSummary()

        async with self.session_factory() as db:
            job_ids = await RetryQueue(db, self.settings).claim_due(
                limit or self.settings.jobs_per_drain, self.owner
            )
        summary.claimed = len(job_ids)
        if not job_ids:
            return summary

        semaphore = asyncio.Semaphore(self.settings.worker_pool_size)

        async def bounded(job_id: str) -> JobStatus:
            async with semaphore:
                return await self.run_job(job_id)

        results = await asyncio.gather(*(bounded(job_id) for job_id in job_ids), return_exceptions=True)
        for job_id, result in zip(job_ids, results):
            if isinstance(result, BaseException):
                summary.failed += 1
                summary.errors.append(f"{job_id}: {result}")
                logger.error(f"Job {job_id} crashed the runner: {result}")
            elif result == JobStatus.SUCCEEDED:
                summary.succeeded += 1
            elif result == JobStatus.QUEUED:
                summary.retried += 1
            else:
                summary.failed += 1

        summary.duration_ms = int((time.time() - start) * 1000)
        logger.info(
            f"Drain finished: {summary.claimed} claimed, {summary.succeeded} succeeded, "
            f"{summary.retried} retried, {summary.failed} failed in {summary.duration_ms}ms"
        )
        return summary

    async def run_job(self, job_id: str) -> JobStatus:
        """Run one claimed job to its next state."""
        async with self.session_factory() as db:
            job = await db.get(RetryJob, job_id)
            if job is None or job.status != JobStatus.RUNNING.value or job.lock_owner != self.owner:
                logger.warning(f"Job {job_id} is no longer claimed by {self.owner}; skipping")
                return JobStatus(job.status) if job else JobStatus.FAILED

            ctx = JobContext(
                id=job.id,
                correlation_id=job.correlation_id,
                stage=job.stage,
                organization_id=job.organization_id,
                payload=dict(job.payload or {}),
                attempts=job.attempts,
                max_attempts=job.max_attempts,
            )
            set_job_context(ctx.correlation_id)
            queue = RetryQueue(db, self.settings)

            try:
                handler = self._handlers.get(ctx.stage)
                if handler is None:
                    raise UnknownJobStage(f"Unknown job stage {ctx.stage}")
                outcome = await handler(db, ctx)
                await queue.complete(ctx.id, outcome, stage=ctx.stage)
                await db.commit()
                return JobStatus.SUCCEEDED
            except DependencyNotYetAvailable as e:
                # Links found so far are write-once; keep them with the attempt
                status = await queue.fail(ctx.id, e)
                await db.commit()
                return status
            except Exception as e:
                await db.rollback()
                status = await queue.fail(ctx.id, e)
                await db.commit()
                return status
            finally:
                clear_context()

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    async def _link_payment(self, db: AsyncSession, ctx: JobContext) -> JobOutcome:
        linker = DeferredLinker(db, self.settings)
        await linker.link_payment(
            ctx.organization_id, ctx.payload["external_payment_id"], exhausted=ctx.final_attempt
        )
        return JobOutcome.COMPLETED

    async def _link_order(self, db: AsyncSession, ctx: JobContext) -> JobOutcome:
        linker = DeferredLinker(db, self.settings)
        await linker.link_order(
            ctx.organization_id, ctx.payload["external_order_id"], exhausted=ctx.final_attempt
        )
        return JobOutcome.COMPLETED

    async def _fetch_order(self, db: AsyncSession, ctx: JobContext) -> JobOutcome:
        await self.pipeline.fetch_and_apply(ctx.organization_id, "order", ctx.payload["external_order_id"])
        return JobOutcome.COMPLETED

    async def _fetch_booking(self, db: AsyncSession, ctx: JobContext) -> JobOutcome:
        await self.pipeline.fetch_and_apply(ctx.organization_id, "booking", ctx.payload["external_booking_id"])
        return JobOutcome.COMPLETED

    async def _sync_gift_card(self, db: AsyncSession, ctx: JobContext) -> JobOutcome:
        await self.pipeline.sync_gift_card(ctx.organization_id, ctx.payload["external_gift_card_id"])
        return JobOutcome.COMPLETED

    async def status(self) -> Dict[str, int]:
        async with self.session_factory() as db:
            return await RetryQueue(db, self.settings).counts()

    async def recent_failures(self, limit: int = 20) -> List[dict]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(RetryJob)
                .where(RetryJob.status == JobStatus.FAILED.value)
                .order_by(RetryJob.updated_at.desc())
                .limit(limit)
            )
            return [
                {
                    "correlation_id": job.correlation_id,
                    "stage": job.stage,
                    "attempts": job.attempts,
                    "outcome": job.outcome,
                    "error_code": job.error_code,
                    "last_error": job.last_error,
                }
                for job in result.scalars().all()
            ]
