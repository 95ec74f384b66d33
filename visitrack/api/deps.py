# Shared FastAPI dependencies

from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from visitrack.core.config import Settings
from visitrack.core.database import get_db
from visitrack.core.errors import ForbiddenError, UnauthorizedError
from visitrack.services.analytics import AnalyticsService
from visitrack.services.events import EventStore
from visitrack.services.ledger import VisitorLedger
from visitrack.services.sessions import SessionTracker
from visitrack.services.windows import Clock, TimeWindow, utcnow

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_clock() -> Clock:
    """Overridden in tests with a controllable clock"""
    return utcnow


def get_ledger(db: AsyncSession = Depends(get_db)) -> VisitorLedger:
    return VisitorLedger(db)


def get_session_tracker(
        db: AsyncSession = Depends(get_db),
        ledger: VisitorLedger = Depends(get_ledger),
        clock: Clock = Depends(get_clock)
) -> SessionTracker:
    return SessionTracker(db, ledger, clock=clock)


def get_event_store(
        db: AsyncSession = Depends(get_db),
        tracker: SessionTracker = Depends(get_session_tracker),
        ledger: VisitorLedger = Depends(get_ledger),
        clock: Clock = Depends(get_clock)
) -> EventStore:
    return EventStore(db, tracker, ledger, clock=clock)


def get_analytics_service(
        db: AsyncSession = Depends(get_db),
        ledger: VisitorLedger = Depends(get_ledger),
        clock: Clock = Depends(get_clock)
) -> AnalyticsService:
    return AnalyticsService(db, ledger, clock=clock)


def get_window(
        start_date: Optional[datetime] = Query(default=None, alias="startDate", description="Window start (inclusive)"),
        end_date: Optional[datetime] = Query(default=None, alias="endDate", description="Window end (exclusive)"),
        settings: Settings = Depends(get_settings),
        clock: Clock = Depends(get_clock)
) -> TimeWindow:
    """Resolve startDate/endDate, defaulting to the trailing window ending now"""
    return TimeWindow.resolve(start_date, end_date, clock(), default_days=settings.default_window_days)


def get_optional_window(
        start_date: Optional[datetime] = Query(default=None, alias="startDate"),
        end_date: Optional[datetime] = Query(default=None, alias="endDate"),
        clock: Clock = Depends(get_clock)
) -> Optional[TimeWindow]:
    """Only filter by time when at least one bound is given"""
    if start_date is None and end_date is None:
        return None
    if start_date is None:
        return TimeWindow(EPOCH, end_date)
    return TimeWindow.resolve(start_date, end_date, clock())


def require_api_key(
        x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
        settings: Settings = Depends(get_settings)
):
    """Guard read and admin endpoints when an API key is configured"""
    if not settings.api_key:
        return
    if x_api_key is None:
        raise UnauthorizedError("Missing X-API-Key header")
    if x_api_key != settings.api_key:
        raise ForbiddenError("Invalid API key")
