"""
Session lifecycle.

    ACTIVE --end_session--> ENDED
    ACTIVE --sweep_inactive--> EXPIRED

ENDED and EXPIRED are terminal. Every mutation is a single conditional
UPDATE guarded on ``status = ACTIVE`` so a session is changed atomically
per row, without cross-session locking: activity racing a sweep either
lands before the expiry (and moves the watermark so the sweep skips the
session) or is dropped because the session is already terminal.
"""
import math
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, func, desc, asc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from visitrack.core.errors import ConflictError, NotFoundError, ValidationError
from visitrack.models.session import Session, SessionStatus
from visitrack.schemas.session import SessionAttributes, SessionStats, DeviceSessions, CountrySessions
from visitrack.services.ledger import VisitorLedger
from visitrack.services.queries import in_window, count_in_window, avg_in_window, group_by_field
from visitrack.services.windows import Clock, TimeWindow, percentage, round2, utcnow

logger = structlog.get_logger()

TERMINAL_STATUSES = frozenset({SessionStatus.ENDED.value, SessionStatus.EXPIRED.value})

SORTABLE_FIELDS = {
    "startTime": Session.start_time,
    "endTime": Session.end_time,
    "duration": Session.duration,
    "pageViews": Session.page_views,
    "eventCount": Session.event_count,
    "lastActivityAt": Session.last_activity_at,
    "userId": Session.user_id,
    "status": Session.status,
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def compute_duration_ms(start_time: datetime, end_time: datetime) -> int:
    """Session duration in whole milliseconds"""
    return int((end_time - start_time) / timedelta(milliseconds=1))


class SessionTracker:
    """Owns session state and the inactivity sweep"""

    def __init__(self, db: AsyncSession, ledger: VisitorLedger, clock: Clock = utcnow):
        self.db = db
        self.ledger = ledger
        self.clock = clock

    async def create(
            self,
            user_id: str,
            attrs: Optional[SessionAttributes] = None,
            session_id: Optional[str] = None
    ) -> Session:
        """Start a new ACTIVE session; fails with ConflictError on an existing id"""
        now = self.clock()
        session_id = session_id or str(uuid.uuid4())
        attrs = attrs or SessionAttributes()

        if await self.db.get(Session, session_id) is not None:
            raise ConflictError(f"Session {session_id} already exists")

        session = Session(
            session_id=session_id,
            user_id=user_id,
            status=SessionStatus.ACTIVE.value,
            start_time=now,
            last_activity_at=now,
            page_views=0,
            event_count=0,
            **attrs.model_dump(include=set(SessionAttributes.model_fields))
        )
        self.db.add(session)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Session {session_id} already exists")

        await self.ledger.record_session(user_id, now)
        await self.db.commit()

        logger.info("session_created", session_id=session_id, user_id=user_id)
        return session

    async def get(self, session_id: str) -> Session:
        session = await self.db.get(Session, session_id, populate_existing=True)
        if session is None:
            raise NotFoundError("Session")
        return session

    async def record_activity(
            self,
            session_id: str,
            is_page_view: bool,
            event_delta: int = 1,
            page_url: Optional[str] = None
    ) -> bool:
        """Apply activity counters to an ACTIVE session.

        Returns False when the session does not exist or is terminal; the
        activity is dropped and the session is never reopened.
        """
        values = {
            "event_count": Session.event_count + event_delta,
            "last_activity_at": self.clock(),
        }
        if is_page_view:
            values["page_views"] = Session.page_views + 1
            if page_url:
                values["exit_page"] = page_url
                values["entry_page"] = func.coalesce(Session.entry_page, page_url)

        stmt = (
            update(Session)
            .where(Session.session_id == session_id, Session.status == SessionStatus.ACTIVE.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        if result.rowcount:
            return True

        logger.info("session_activity_dropped", session_id=session_id)
        return False

    async def end_session(self, session_id: str, exit_page: Optional[str] = None) -> Session:
        """ACTIVE -> ENDED. Ending a terminal session is a no-op."""
        session = await self.get(session_id)
        if is_terminal(session.status):
            return session

        now = self.clock()
        values = {
            "status": SessionStatus.ENDED.value,
            "end_time": now,
            "duration": compute_duration_ms(session.start_time, now),
        }
        if exit_page:
            values["exit_page"] = exit_page

        stmt = (
            update(Session)
            .where(Session.session_id == session_id, Session.status == SessionStatus.ACTIVE.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        if result.rowcount:
            logger.info("session_ended", session_id=session_id, duration_ms=values["duration"])
        return await self.get(session_id)

    async def sweep_inactive(self, threshold: timedelta) -> int:
        """Expire ACTIVE sessions idle for longer than ``threshold``.

        ``end_time`` is the cutoff instant rather than the sweep time, so the
        duration reflects the last moment the session was known to be live.
        Returns the number of sessions transitioned.
        """
        if threshold <= timedelta(0):
            raise ValidationError("Inactivity threshold must be positive")

        cutoff = self.clock() - threshold
        candidates = await self.db.execute(
            select(Session.session_id, Session.start_time)
            .where(Session.status == SessionStatus.ACTIVE.value, Session.last_activity_at < cutoff)
        )

        expired = 0
        for session_id, start_time in candidates.all():
            # Compare-and-set: skip if activity or an explicit end got there first
            stmt = (
                update(Session)
                .where(
                    Session.session_id == session_id,
                    Session.status == SessionStatus.ACTIVE.value,
                    Session.last_activity_at < cutoff
                )
                .values(
                    status=SessionStatus.EXPIRED.value,
                    end_time=cutoff,
                    duration=compute_duration_ms(start_time, cutoff)
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            expired += result.rowcount or 0
        await self.db.commit()

        logger.info(
            "sessions_expired",
            expired=expired,
            inactive_minutes=round2(threshold.total_seconds() / 60),
            cutoff=cutoff.isoformat()
        )
        return expired

    async def by_user(self, user_id: str, limit: int = 10) -> list[Session]:
        result = await self.db.execute(
            select(Session)
            .where(Session.user_id == user_id)
            .order_by(desc(Session.start_time))
            .limit(limit)
        )
        return list(result.scalars())

    async def active(self) -> list[Session]:
        result = await self.db.execute(
            select(Session)
            .where(Session.status == SessionStatus.ACTIVE.value)
            .order_by(desc(Session.last_activity_at))
        )
        return list(result.scalars())

    async def search(
            self,
            user_id: Optional[str] = None,
            status: Optional[SessionStatus] = None,
            device: Optional[str] = None,
            country: Optional[str] = None,
            window: Optional[TimeWindow] = None,
            page: int = 1,
            limit: int = 20,
            sort_by: str = "startTime",
            sort_order: str = "desc"
    ) -> tuple[list[Session], int, int]:
        """Filtered, paginated listing. Returns (sessions, total, total_pages)."""
        column = SORTABLE_FIELDS.get(sort_by)
        if column is None:
            raise ValidationError(
                f"Cannot sort sessions by '{sort_by}'",
                details={"allowed": sorted(SORTABLE_FIELDS)}
            )

        criteria = []
        if user_id:
            criteria.append(Session.user_id == user_id)
        if status:
            criteria.append(Session.status == SessionStatus(status).value)
        if device:
            criteria.append(Session.device == device)
        if country:
            criteria.append(Session.country == country)
        if window:
            criteria.append(in_window(Session.start_time, window))

        total = (await self.db.execute(
            select(func.count()).select_from(Session).where(*criteria)
        )).scalar() or 0

        direction = asc if sort_order == "asc" else desc
        result = await self.db.execute(
            select(Session)
            .where(*criteria)
            .order_by(direction(column), asc(Session.session_id))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars()), total, math.ceil(total / limit) if limit else 0

    async def stats(self, window: TimeWindow) -> SessionStats:
        total_sessions = await count_in_window(self.db, Session.start_time, window)
        active_sessions = (await self.db.execute(
            select(func.count()).select_from(Session).where(Session.status == SessionStatus.ACTIVE.value)
        )).scalar() or 0
        avg_duration = await avg_in_window(self.db, Session.duration, Session.start_time, window)
        avg_page_views = await avg_in_window(self.db, Session.page_views, Session.start_time, window)
        bounced = await count_in_window(self.db, Session.start_time, window, Session.page_views <= 1)

        by_device = await group_by_field(
            self.db, Session.device, Session.start_time, window, default_key="Unknown"
        )

        country_rows = await self.db.execute(
            select(
                Session.country,
                func.count().label("n"),
                func.count(func.distinct(Session.user_id)).label("n_users"),
                func.avg(Session.duration).label("avg_duration"),
            )
            .where(in_window(Session.start_time, window), Session.country.is_not(None))
            .group_by(Session.country)
            .order_by(desc("n"), asc(Session.country))
        )

        return SessionStats(
            total_sessions=total_sessions,
            active_sessions=active_sessions,
            avg_duration=round2(avg_duration),
            avg_page_views=round2(avg_page_views),
            bounce_rate=percentage(bounced, total_sessions),
            sessions_by_device=[
                DeviceSessions(device=row.key, count=row.count) for row in by_device
            ],
            sessions_by_country=[
                CountrySessions(
                    country=row.country,
                    sessions=row.n,
                    unique_users=row.n_users,
                    avg_duration=round2(row.avg_duration or 0)
                )
                for row in country_rows
            ],
        )
