import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .config import Settings, get_settings
from .database import build_engine, build_session_factory, create_tables
from .errors import StorageConstraintViolation
from .routers import jobs, webhooks
from .services.job_runner import JobRunner
from .services.scheduler import DrainScheduler
from .services.upstream_client import UpstreamClient
from .services.webhook_processor import IngestionPipeline
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


# Request ID Middleware
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        setup_logging(settings.log_level, json_format=settings.log_json)
        logger.info(f"Starting eventsync ({settings.environment})")

        engine = build_engine(settings)
        if settings.auto_create_tables:
            await create_tables(engine)
        session_factory = build_session_factory(engine)

        upstream = None
        if settings.square_access_token:
            upstream = UpstreamClient(settings)
        else:
            logger.warning("SQUARE_ACCESS_TOKEN not set; upstream fetches are disabled")

        pipeline = IngestionPipeline(session_factory, settings, upstream)
        runner = JobRunner(session_factory, settings, pipeline)

        scheduler = None
        if settings.scheduler_enabled:
            scheduler = DrainScheduler(runner, settings.drain_interval_seconds)
            scheduler.start()

        app.state.settings = settings
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.upstream = upstream
        app.state.pipeline = pipeline
        app.state.runner = runner
        app.state.scheduler = scheduler

        yield

        # Shutdown
        logger.info("Shutting down eventsync...")
        if scheduler:
            scheduler.stop()
        if upstream:
            await upstream.aclose()
        await engine.dispose()

    app = FastAPI(
        title="eventsync",
        description="Webhook event reconciliation engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestIdMiddleware)

    @app.exception_handler(StorageConstraintViolation)
    async def storage_violation_handler(request: Request, exc: StorageConstraintViolation):
        logger.error(f"Storage constraint violation: {exc.message}")
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage constraint violation", "code": exc.code},
        )

    app.include_router(webhooks.router)
    app.include_router(jobs.router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
