"""
Retry job queue endpoints.

``POST /jobs/drain`` is the external cron trigger (for deployments without
the in-process scheduler). Every endpoint here requires
``Authorization: Bearer <CRON_SECRET>`` and fails closed when no secret is
configured.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from ..schemas.webhook import DrainResponse, JobStatusResponse, RequeueRequest, RequeueResponse
from ..services.retry_queue import RetryQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def require_cron_secret(request: Request, authorization: Optional[str] = Header(None)) -> None:
    secret = request.app.state.settings.cron_secret
    if not secret:
        logger.warning("CRON_SECRET is not configured; refusing job endpoint")
        raise HTTPException(status_code=401, detail="Cron secret not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), secret):
        raise HTTPException(status_code=401, detail="Invalid cron secret")


@router.post("/drain", response_model=DrainResponse, dependencies=[Depends(require_cron_secret)])
async def drain_jobs(request: Request, limit: Optional[int] = None):
    """Drain due retry jobs once."""
    runner = request.app.state.runner
    summary = await runner.drain(limit)
    return DrainResponse(**summary.to_dict())


@router.get("/status", response_model=JobStatusResponse, dependencies=[Depends(require_cron_secret)])
async def job_status(request: Request):
    runner = request.app.state.runner
    scheduler = getattr(request.app.state, "scheduler", None)
    return JobStatusResponse(
        counts=await runner.status(),
        scheduler=scheduler.status() if scheduler else None,
        recent_failures=await runner.recent_failures(),
    )


@router.post("/requeue", response_model=RequeueResponse, dependencies=[Depends(require_cron_secret)])
async def requeue_failed_jobs(request: Request, body: RequeueRequest):
    """Put failed jobs back in the queue with a fresh attempt budget."""
    async with request.app.state.session_factory() as db:
        count = await RetryQueue(db, request.app.state.settings).requeue_failed(
            body.stage, body.include_not_found
        )
        await db.commit()
    return RequeueResponse(requeued=count)
