import logging
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from .config import Settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create the process-wide connection pool.

    The engine is owned by whoever boots the process (FastAPI lifespan,
    worker.py, backfill.py) and handed down explicitly.
    """
    connect_args = {}
    if settings.is_sqlite:
        # Concurrent writers on SQLite wait on the file lock instead of failing
        connect_args = {"timeout": 30}

    safe_url = settings.database_url.split("@")[-1]
    logger.info(f"Using database: {safe_url[:60]}")

    return create_async_engine(
        settings.database_url,
        connect_args=connect_args,
        echo=settings.database_echo,
        pool_pre_ping=not settings.is_sqlite,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency to get a request-scoped database session"""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables in the database (development and tests; production uses alembic)"""
    from . import models  # noqa: F401  register every table on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
