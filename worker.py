#!/usr/bin/env python
"""
Retry Job Worker

Background process that drains due RetryJobs outside the web process
(deployments that run with SCHEDULER_ENABLED=false).

Run with:
    python worker.py

Or with environment:
    DRAIN_INTERVAL_SECONDS=10 JOBS_PER_DRAIN=100 python worker.py
"""

import asyncio
import os
import signal
import sys
import time

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from eventsync.config import get_settings
from eventsync.database import build_engine, build_session_factory
from eventsync.services.job_runner import JobRunner
from eventsync.services.upstream_client import UpstreamClient
from eventsync.services.webhook_processor import IngestionPipeline
from eventsync.utils.logging_config import get_logger, setup_logging

logger = get_logger("worker")


async def run_worker(stop: asyncio.Event):
    """Main worker loop"""
    settings = get_settings()

    logger.info("=" * 50)
    logger.info("Starting Retry Job Worker")
    logger.info(f"Drain interval: {settings.drain_interval_seconds}s")
    logger.info(f"Jobs per drain: {settings.jobs_per_drain}, pool size: {settings.worker_pool_size}")
    logger.info("=" * 50)

    engine = build_engine(settings)
    session_factory = build_session_factory(engine)
    upstream = UpstreamClient(settings) if settings.square_access_token else None
    pipeline = IngestionPipeline(session_factory, settings, upstream)
    runner = JobRunner(session_factory, settings, pipeline)

    cycle = 0
    try:
        while not stop.is_set():
            cycle += 1
            start_time = time.time()

            try:
                summary = await runner.drain()
            except Exception as e:
                # Keep polling; the next cycle reclaims anything left running
                logger.exception(f"Critical error in cycle {cycle}: {e}")
            else:
                if summary.claimed:
                    duration = time.time() - start_time
                    logger.info(
                        f"Cycle {cycle}: {summary.succeeded} succeeded, "
                        f"{summary.retried} retried, {summary.failed} failed | {duration:.2f}s"
                    )

            try:
                await asyncio.wait_for(stop.wait(), timeout=settings.drain_interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        if upstream:
            await upstream.aclose()
        await engine.dispose()

    logger.info("Worker shutdown complete")


def main():
    settings = get_settings()
    setup_logging(settings.log_level, json_format=settings.log_json, include_uvicorn=False)

    loop = asyncio.new_event_loop()
    stop = asyncio.Event()

    def signal_handler():
        """Handle shutdown signals gracefully"""
        logger.info("Received shutdown signal, finishing current drain...")
        stop.set()

    # Register signal handlers for graceful shutdown
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(run_worker(stop))
    except Exception as e:
        logger.critical(f"Worker crashed: {e}")
        sys.exit(1)
    finally:
        loop.close()


if __name__ == "__main__":
    main()
