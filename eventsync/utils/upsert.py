"""
Database-specific upsert strategies using the Strategy pattern.

Every entity write is a single ``INSERT ... ON CONFLICT (natural key) DO
UPDATE`` statement so that concurrent writers racing on the same row are
resolved by the store, never by read-then-write in the application.

The SET clause is generated from a ``MergePolicy``:

- default columns merge non-destructively: a newer-or-equal version lets a
  non-null incoming value replace the stored one, an older version may only
  fill gaps
- volatile columns (status, version, upstream updated-at, raw snapshot) take
  the incoming value only when the incoming version is not older
- first-write-wins columns keep the stored value unless it is null
- ``updated_at`` is always refreshed
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Sequence, Tuple, Type

from sqlalchemy import and_, case, func, or_, true
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession

from .dates import utcnow
from .db_helpers import dialect_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergePolicy:
    """Per-table conflict resolution rules."""
    conflict_columns: Tuple[str, ...]
    volatile: FrozenSet[str] = frozenset()
    first_write_wins: FrozenSet[str] = frozenset()
    version_column: Optional[str] = None


class UpsertStrategy(ABC):
    """Abstract base class for database-specific upsert strategies"""

    # Columns never touched by the UPDATE branch
    INSERT_ONLY_COLUMNS = {'id', 'created_at'}

    @abstractmethod
    def insert(self, model: Type):
        """Dialect-specific INSERT construct supporting ON CONFLICT."""

    def build_merge(
        self,
        model: Type,
        values: Dict[str, Any],
        policy: MergePolicy,
        returning: Sequence[str] = ("id",),
    ):
        table = model.__table__
        values = dict(values)
        if 'updated_at' in table.c and 'updated_at' not in values:
            values['updated_at'] = utcnow()

        stmt = self.insert(model).values(**values)
        excluded = stmt.excluded

        if policy.version_column:
            current = table.c[policy.version_column]
            incoming = excluded[policy.version_column]
            is_newer = or_(
                current.is_(None),
                and_(incoming.isnot(None), incoming >= current),
            )
        else:
            is_newer = true()

        skip = set(policy.conflict_columns) | self.INSERT_ONLY_COLUMNS
        set_ = {}
        for name in values:
            if name in skip:
                continue
            current = table.c[name]
            incoming = excluded[name]
            if name == 'updated_at':
                set_[name] = incoming
            elif name in policy.first_write_wins:
                set_[name] = func.coalesce(current, incoming)
            elif name in policy.volatile or name == policy.version_column:
                set_[name] = case((is_newer, incoming), else_=current)
            else:
                set_[name] = case(
                    (is_newer, func.coalesce(incoming, current)),
                    else_=func.coalesce(current, incoming),
                )

        if not set_:
            # Natural key only: still return the existing row
            key = policy.conflict_columns[0]
            set_[key] = excluded[key]

        stmt = stmt.on_conflict_do_update(
            index_elements=list(policy.conflict_columns),
            set_=set_,
        )
        return stmt.returning(*[table.c[c] for c in returning])

    def build_insert_ignore(
        self,
        model: Type,
        values: Dict[str, Any],
        conflict_columns: Sequence[str],
        returning: Sequence[str] = ("id",),
    ):
        table = model.__table__
        stmt = self.insert(model).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
        return stmt.returning(*[table.c[c] for c in returning])


class PostgreSQLUpsertStrategy(UpsertStrategy):
    """
    PostgreSQL upsert using ON CONFLICT ... DO UPDATE.

    Syntax:
        INSERT INTO table (col1, col2) VALUES (:val1, :val2)
        ON CONFLICT (col1) DO UPDATE SET col2 = COALESCE(EXCLUDED.col2, table.col2)
    """

    def insert(self, model: Type):
        return postgresql.insert(model)


class SQLiteUpsertStrategy(UpsertStrategy):
    """
    SQLite upsert (3.35+ for RETURNING) with the same ON CONFLICT grammar.
    """

    def insert(self, model: Type):
        return sqlite.insert(model)


_STRATEGIES = {
    'postgresql': PostgreSQLUpsertStrategy(),
    'sqlite': SQLiteUpsertStrategy(),
}


def get_upsert_strategy(dialect: str) -> UpsertStrategy:
    try:
        return _STRATEGIES[dialect]
    except KeyError:
        raise NotImplementedError(f"No upsert strategy for dialect {dialect}")


async def merge_upsert(
    db: AsyncSession,
    model: Type,
    values: Dict[str, Any],
    policy: MergePolicy,
    returning: Sequence[str] = ("id",),
) -> Row:
    """Insert or non-destructively merge one row; returns the requested columns."""
    strategy = get_upsert_strategy(dialect_name(db))
    stmt = strategy.build_merge(model, values, policy, returning)
    result = await db.execute(stmt)
    row = result.one()
    logger.debug(f"Upsert {model.__tablename__} on {policy.conflict_columns}")
    return row


async def insert_ignore(
    db: AsyncSession,
    model: Type,
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
    returning: Sequence[str] = ("id",),
) -> Optional[Row]:
    """Insert one row unless the natural key exists; returns None on conflict."""
    strategy = get_upsert_strategy(dialect_name(db))
    stmt = strategy.build_insert_ignore(model, values, conflict_columns, returning)
    result = await db.execute(stmt)
    return result.first()
