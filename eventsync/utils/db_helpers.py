"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Row locking helpers (no-ops on SQLite, which serializes writers itself)
- Skip-locked queue reads for concurrent drain workers
"""

import logging
from typing import Optional, TypeVar, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar('T')


def dialect_name(db: AsyncSession) -> str:
    """Name of the dialect the session is bound to"""
    return db.bind.dialect.name


def is_postgres(db: AsyncSession) -> bool:
    """Check if the database is PostgreSQL"""
    return dialect_name(db) == 'postgresql'


def is_sqlite(db: AsyncSession) -> bool:
    """Check if the database is SQLite"""
    return dialect_name(db) == 'sqlite'


async def acquire_row_lock(
    db: AsyncSession,
    model: Type[T],
    filter_condition,
    skip_locked: bool = False
) -> Optional[T]:
    """
    Acquire a row-level lock on a database record.

    Args:
        db: Database session
        model: SQLAlchemy model class
        filter_condition: Filter to find the row
        skip_locked: If True, skip locked rows (PostgreSQL only)

    Returns:
        The locked model instance, or None if not found

    Example:
        card = await acquire_row_lock(db, GiftCard, GiftCard.id == card_id)
    """
    stmt = select(model).where(filter_condition)

    # Only apply locking on PostgreSQL
    if is_postgres(db):
        stmt = stmt.with_for_update(skip_locked=skip_locked)

    result = await db.execute(stmt)
    return result.scalars().first()


async def get_pending_with_skip_locked(
    db: AsyncSession,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> list:
    """
    Get pending records with skip_locked to prevent worker race conditions.

    Args:
        db: Database session
        model: SQLAlchemy model class
        filter_condition: Filter for pending records
        order_by: Optional ordering
        limit: Maximum records to fetch

    Returns:
        List of model instances (other workers will skip these on PostgreSQL)
    """
    stmt = select(model).where(filter_condition)

    if order_by is not None:
        stmt = stmt.order_by(order_by)

    if is_postgres(db):
        stmt = stmt.with_for_update(skip_locked=True)

    result = await db.execute(stmt.limit(limit))
    return list(result.scalars().all())
