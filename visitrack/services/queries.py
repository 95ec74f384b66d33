# Parameterized aggregate queries composed by the analytics services

from dataclasses import dataclass
from typing import Any, List, Optional

from sqlalchemy import select, func, and_, desc, asc
from sqlalchemy.ext.asyncio import AsyncSession

from visitrack.services.windows import TimeWindow


@dataclass(frozen=True)
class GroupCount:
    """One row of a grouped count, optionally with a distinct count"""

    key: Any
    count: int
    distinct: int = 0


def in_window(column, window: TimeWindow):
    """Half-open range predicate ``start <= column < end``"""
    return and_(column >= window.start, column < window.end)


async def count_in_window(
        db: AsyncSession,
        time_column,
        window: TimeWindow,
        *criteria,
        distinct=None
) -> int:
    """Count rows (or distinct values of ``distinct``) whose time falls in the window"""
    target = func.count(func.distinct(distinct)) if distinct is not None else func.count()
    stmt = (
        select(target)
        .select_from(time_column.class_)
        .where(in_window(time_column, window), *criteria)
    )
    result = await db.execute(stmt)
    return result.scalar() or 0


async def sum_in_window(
        db: AsyncSession,
        value_column,
        time_column,
        window: TimeWindow,
        *criteria
) -> float:
    stmt = (
        select(func.coalesce(func.sum(value_column), 0))
        .where(in_window(time_column, window), *criteria)
    )
    result = await db.execute(stmt)
    return float(result.scalar() or 0)


async def avg_in_window(
        db: AsyncSession,
        value_column,
        time_column,
        window: TimeWindow,
        *criteria
) -> float:
    stmt = (
        select(func.avg(value_column))
        .where(in_window(time_column, window), value_column.is_not(None), *criteria)
    )
    result = await db.execute(stmt)
    return float(result.scalar() or 0)


async def group_by_field(
        db: AsyncSession,
        field,
        time_column,
        window: TimeWindow,
        *criteria,
        distinct=None,
        default_key: Optional[str] = None,
        limit: Optional[int] = None
) -> List[GroupCount]:
    """Count rows in the window grouped by ``field``.

    Rows come back ranked by count desc, then key asc, so equal counts
    always appear in the same order. ``default_key`` replaces NULL keys.
    """
    key = func.coalesce(field, default_key) if default_key is not None else field
    columns = [key.label("group_key"), func.count().label("n")]
    if distinct is not None:
        columns.append(func.count(func.distinct(distinct)).label("n_distinct"))

    stmt = (
        select(*columns)
        .select_from(time_column.class_)
        .where(in_window(time_column, window), *criteria)
        .group_by(key)
        .order_by(desc("n"), asc("group_key"))
    )
    if limit is not None:
        stmt = stmt.limit(limit)

    result = await db.execute(stmt)
    return [
        GroupCount(
            key=row.group_key,
            count=row.n,
            distinct=row.n_distinct if distinct is not None else 0
        )
        for row in result
    ]


async def top_n_by_field(
        db: AsyncSession,
        field,
        time_column,
        window: TimeWindow,
        limit: int,
        *criteria,
        distinct=None,
        default_key: Optional[str] = None
) -> List[GroupCount]:
    return await group_by_field(
        db,
        field,
        time_column,
        window,
        *criteria,
        distinct=distinct,
        default_key=default_key,
        limit=limit
    )
