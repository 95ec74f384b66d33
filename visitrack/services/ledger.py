from datetime import datetime
from typing import Optional

from sqlalchemy import select, func, case
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from visitrack.models.visitor import Visitor
from visitrack.services.windows import TimeWindow

logger = structlog.get_logger()


class VisitorLedger:
    """Per-user running totals.

    Writes are single upsert statements so concurrent ingestion for the same
    user never loses an increment. Callers own the transaction; nothing here
    commits. The totals are eventually consistent with the event table and
    are never recomputed from raw events.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        return pg_insert if dialect == "postgresql" else sqlite_insert

    async def _upsert(self, user_id: str, seen_at: datetime, **increments):
        values = {
            "user_id": user_id,
            "total_events": 0,
            "total_sessions": 0,
            "total_purchases": 0,
            "total_revenue": 0.0,
            "first_seen": seen_at,
            "last_seen": seen_at,
        }
        values.update(increments)

        stmt = self._insert()(Visitor).values(**values)
        excluded = stmt.excluded
        update = {
            name: getattr(Visitor, name) + getattr(excluded, name)
            for name in increments
        }
        update["first_seen"] = case(
            (excluded.first_seen < Visitor.first_seen, excluded.first_seen),
            else_=Visitor.first_seen
        )
        update["last_seen"] = case(
            (excluded.last_seen > Visitor.last_seen, excluded.last_seen),
            else_=Visitor.last_seen
        )
        stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=update)
        await self.db.execute(stmt)

    async def record_event(
            self,
            user_id: str,
            occurred_at: datetime,
            is_purchase: bool = False,
            revenue: float = 0.0
    ):
        increments = {"total_events": 1}
        if is_purchase:
            increments["total_purchases"] = 1
            increments["total_revenue"] = revenue
        await self._upsert(user_id, occurred_at, **increments)

    async def record_session(self, user_id: str, started_at: datetime):
        await self._upsert(user_id, started_at, total_sessions=1)

    async def get(self, user_id: str) -> Optional[Visitor]:
        return await self.db.get(Visitor, user_id, populate_existing=True)

    async def new_vs_returning(self, active_user_ids, window: TimeWindow) -> dict[str, int]:
        """Split the users in ``active_user_ids`` (a select of ids) by first_seen.

        New users were first seen inside the window, returning users before it.
        """
        stmt = (
            select(
                func.coalesce(func.sum(case((Visitor.first_seen >= window.start, 1), else_=0)), 0),
                func.coalesce(func.sum(case((Visitor.first_seen < window.start, 1), else_=0)), 0),
            )
            .where(Visitor.user_id.in_(active_user_ids))
        )
        result = await self.db.execute(stmt)
        new_users, returning_users = result.one()
        return {"new_users": int(new_users), "returning_users": int(returning_users)}
