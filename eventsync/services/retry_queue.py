"""
Retry Job Queue

Durable queue of deferred work keyed by ``correlation_id``:

- enqueue is a single upsert; it never duplicates a live job and revives a
  finished one with a fresh attempt budget
- workers claim due jobs with SKIP LOCKED (PostgreSQL) plus a
  compare-and-set on status, so two drains never run the same job
- running jobs whose lock outlived ``JOB_LOCK_TIMEOUT_SECONDS`` (crashed
  worker) are reclaimed and count as an attempt
- exponential backoff with jitter; respects upstream Retry-After

Only ``claim_due`` commits. Everything else joins the caller's transaction so
that a job's outcome commits atomically with the work it did.
"""

import random
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, settings as default_settings
from ..errors import (
    DependencyNotYetAvailable,
    ReconciliationError,
    UpstreamNotFound,
    UpstreamRateLimited,
)
from ..models import JobOutcome, JobStage, JobStatus, RetryJob
from ..utils.dates import utcnow
from ..utils.db_helpers import dialect_name, get_pending_with_skip_locked
from ..utils.logging_config import get_logger
from ..utils.upsert import get_upsert_strategy

logger = get_logger(__name__)


class RetryQueue:
    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings

    async def enqueue(
        self,
        correlation_id: str,
        stage: JobStage,
        payload: dict,
        organization_id: Optional[str] = None,
        delay_seconds: float = 0,
        max_attempts: Optional[int] = None,
    ) -> Optional[str]:
        """
        Schedule a job. Returns its id, or None when a job with the same
        correlation id is already queued or running.
        """
        now = utcnow()
        stage_value = stage.value if isinstance(stage, JobStage) else stage
        attempts_budget = max_attempts or self.settings.retry_max_attempts
        scheduled_at = now + timedelta(seconds=delay_seconds)

        table = RetryJob.__table__
        insert = get_upsert_strategy(dialect_name(self.db)).insert(RetryJob)
        stmt = insert.values(
            correlation_id=correlation_id,
            stage=stage_value,
            organization_id=organization_id,
            payload=payload,
            status=JobStatus.QUEUED.value,
            attempts=0,
            max_attempts=attempts_budget,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["correlation_id"],
            set_={
                "stage": stmt.excluded.stage,
                "organization_id": func.coalesce(stmt.excluded.organization_id, table.c.organization_id),
                "payload": stmt.excluded.payload,
                "status": JobStatus.QUEUED.value,
                "outcome": None,
                "attempts": 0,
                "max_attempts": stmt.excluded.max_attempts,
                "scheduled_at": stmt.excluded.scheduled_at,
                "last_error": None,
                "error_code": None,
                "lock_owner": None,
                "locked_at": None,
                "completed_at": None,
                "updated_at": now,
            },
            where=table.c.status.in_([JobStatus.SUCCEEDED.value, JobStatus.FAILED.value]),
        ).returning(table.c.id)

        result = await self.db.execute(stmt)
        job_id = result.scalar()
        if job_id:
            logger.info(f"Enqueued {correlation_id} (delay {delay_seconds:.0f}s)")
        else:
            logger.debug(f"{correlation_id} already pending; enqueue skipped")
        return job_id

    async def claim_due(self, limit: int, owner: str) -> List[str]:
        """
        Claim up to ``limit`` due jobs for ``owner`` and commit the claim.
        Returns the claimed job ids, oldest first.
        """
        now = utcnow()
        stale_before = now - timedelta(seconds=self.settings.job_lock_timeout_seconds)

        candidates = await get_pending_with_skip_locked(
            self.db,
            RetryJob,
            or_(
                and_(
                    RetryJob.status == JobStatus.QUEUED.value,
                    RetryJob.scheduled_at <= now,
                ),
                and_(
                    RetryJob.status == JobStatus.RUNNING.value,
                    RetryJob.locked_at < stale_before,
                ),
            ),
            order_by=RetryJob.scheduled_at,
            limit=limit,
        )
        seen = [(job.id, job.status, job.locked_at, job.attempts, job.max_attempts, job.stage)
                for job in candidates]

        claimed = []
        for job_id, status, locked_at, attempts, max_attempts, stage in seen:
            guard = [RetryJob.id == job_id, RetryJob.status == status]
            values = {
                "status": JobStatus.RUNNING.value,
                "lock_owner": owner,
                "locked_at": now,
                "updated_at": now,
            }
            if status == JobStatus.RUNNING.value:
                # The previous worker died mid-attempt
                guard.append(RetryJob.locked_at == locked_at)
                attempts += 1
                values["attempts"] = attempts
                if attempts >= max_attempts:
                    values.update(
                        status=JobStatus.FAILED.value,
                        outcome=JobOutcome.EXHAUSTED.value,
                        last_error="lock timed out on final attempt",
                        lock_owner=None,
                        locked_at=None,
                        completed_at=now,
                    )

            result = await self.db.execute(update(RetryJob).where(*guard).values(**values))
            if not result.rowcount:
                continue
            if values["status"] == JobStatus.RUNNING.value:
                claimed.append(job_id)
                logger.job_transition(job_id, stage, status, JobStatus.RUNNING.value, owner=owner)
            else:
                logger.job_transition(job_id, stage, status, JobStatus.FAILED.value, reason="stale lock")

        await self.db.commit()
        return claimed

    async def complete(
        self,
        job_id: str,
        outcome: JobOutcome = JobOutcome.COMPLETED,
        stage: str = "",
    ) -> None:
        now = utcnow()
        await self.db.execute(
            update(RetryJob)
            .where(RetryJob.id == job_id)
            .values(
                status=JobStatus.SUCCEEDED.value,
                outcome=outcome.value,
                attempts=RetryJob.attempts + 1,
                lock_owner=None,
                locked_at=None,
                completed_at=now,
                updated_at=now,
            )
        )
        logger.job_transition(job_id, stage, JobStatus.RUNNING.value, JobStatus.SUCCEEDED.value,
                              outcome=outcome.value)

    async def fail(self, job_id: str, error: Exception) -> JobStatus:
        """
        Record a failed attempt and decide what happens next: back to
        ``queued`` with backoff, ``failed`` for terminal errors or exhaustion,
        or ``succeeded``/``unlinkable`` when the linker ran out of strategies.
        """
        result = await self.db.execute(
            select(RetryJob.attempts, RetryJob.max_attempts, RetryJob.stage, RetryJob.correlation_id)
            .where(RetryJob.id == job_id)
        )
        row = result.one()
        attempts = row.attempts + 1
        now = utcnow()

        if isinstance(error, ReconciliationError):
            retryable = error.retryable
            code = error.code
            message = error.message
        else:
            # Unknown failures are assumed transient
            retryable = True
            code = type(error).__name__
            message = str(error) or code

        values = {
            "attempts": attempts,
            "last_error": message[:1000],
            "error_code": code,
            "lock_owner": None,
            "locked_at": None,
            "updated_at": now,
        }

        if not retryable:
            outcome = (
                JobOutcome.UPSTREAM_NOT_FOUND if isinstance(error, UpstreamNotFound)
                else JobOutcome.PERMANENT_ERROR
            )
            status = JobStatus.FAILED
            values.update(status=status.value, outcome=outcome.value, completed_at=now)
            logger.error(f"Job {row.correlation_id} failed permanently: {message}")
        elif attempts >= row.max_attempts:
            if isinstance(error, DependencyNotYetAvailable) and error.terminal_on_exhaustion:
                status = JobStatus.SUCCEEDED
                outcome = JobOutcome.UNLINKABLE
                logger.warning(f"Job {row.correlation_id} closed as unlinkable: {message}")
            else:
                status = JobStatus.FAILED
                outcome = JobOutcome.EXHAUSTED
                logger.error(f"Job {row.correlation_id} exhausted after {attempts} attempts: {message}")
            values.update(status=status.value, outcome=outcome.value, completed_at=now)
        else:
            status = JobStatus.QUEUED
            delay = self.backoff_seconds(attempts)
            if isinstance(error, UpstreamRateLimited) and error.retry_after:
                delay = max(delay, error.retry_after)
            values.update(status=status.value, scheduled_at=now + timedelta(seconds=delay))
            logger.warning(
                f"Job {row.correlation_id} attempt {attempts}/{row.max_attempts} failed "
                f"({code}); retrying in {delay:.0f}s"
            )

        await self.db.execute(update(RetryJob).where(RetryJob.id == job_id).values(**values))
        logger.job_transition(job_id, row.stage, JobStatus.RUNNING.value, status.value, error_code=code)
        return status

    def backoff_seconds(self, attempts: int) -> float:
        """Exponential backoff: base * 2^(attempts-1), capped, plus jitter in [0, base)."""
        base = self.settings.retry_base_delay_seconds
        cap = self.settings.retry_max_delay_seconds
        delay = min(base * (2 ** max(attempts - 1, 0)), cap)
        return delay + random.uniform(0, base)

    async def requeue_failed(
        self,
        stage: Optional[str] = None,
        include_not_found: bool = False,
    ) -> int:
        """Put failed jobs back in the queue with a fresh attempt budget."""
        now = utcnow()
        stmt = update(RetryJob).where(RetryJob.status == JobStatus.FAILED.value)
        if stage:
            stmt = stmt.where(RetryJob.stage == stage)
        if not include_not_found:
            stmt = stmt.where(or_(
                RetryJob.outcome.is_(None),
                RetryJob.outcome != JobOutcome.UPSTREAM_NOT_FOUND.value,
            ))
        result = await self.db.execute(
            stmt.values(
                status=JobStatus.QUEUED.value,
                outcome=None,
                attempts=0,
                scheduled_at=now,
                last_error=None,
                error_code=None,
                completed_at=None,
                updated_at=now,
            )
        )
        count = result.rowcount or 0
        logger.info(f"Requeued {count} failed job(s)" + (f" for stage {stage}" if stage else ""))
        return count

    async def counts(self) -> Dict[str, int]:
        """Number of jobs per status."""
        result = await self.db.execute(
            select(RetryJob.status, func.count(RetryJob.id)).group_by(RetryJob.status)
        )
        counts = {status.value: 0 for status in JobStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def get(self, correlation_id: str) -> Optional[RetryJob]:
        result = await self.db.execute(
            select(RetryJob).where(RetryJob.correlation_id == correlation_id)
        )
        return result.scalars().first()
