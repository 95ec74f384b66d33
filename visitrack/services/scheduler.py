import uuid
from datetime import timedelta
from typing import Optional

import redis
import structlog

from visitrack.core.config import Settings
from visitrack.core.database import Database
from visitrack.services.analytics import AnalyticsService
from visitrack.services.export import SummaryExporter
from visitrack.services.ledger import VisitorLedger
from visitrack.services.sessions import SessionTracker
from visitrack.services.windows import Clock, TimeWindow, start_of_day, utcnow

logger = structlog.get_logger()

LOCK_KEY = "scheduler:lock"
EXPORT_MARKER_KEY = "export:last_day"


class SweepScheduler:
    """Periodic maintenance: expire idle sessions and export yesterday's summary.

    Only one runner proceeds at a time across processes; the others skip
    their tick. The lock expires on its own if a runner dies mid-run.
    """

    def __init__(
            self,
            database: Database,
            redis_client: redis.Redis,
            settings: Settings,
            exporter: Optional[SummaryExporter] = None,
            clock: Clock = utcnow
    ):
        self.database = database
        self.redis_client = redis_client
        self.settings = settings
        self.exporter = exporter or SummaryExporter(settings.export_dir, settings.duckdb_path)
        self.clock = clock

    def acquire_lock(self) -> Optional[str]:
        token = str(uuid.uuid4())
        acquired = self.redis_client.set(
            LOCK_KEY, token, nx=True, ex=self.settings.sweep_lock_ttl_seconds
        )
        return token if acquired else None

    def release_lock(self, token: str):
        current = self.redis_client.get(LOCK_KEY)
        if isinstance(current, bytes):
            current = current.decode()
        # Never release a lock that expired and was taken by another runner
        if current == token:
            self.redis_client.delete(LOCK_KEY)

    async def sweep(self) -> int:
        threshold = timedelta(minutes=self.settings.session_inactive_minutes)
        async with self.database.session_factory() as db:
            tracker = SessionTracker(db, VisitorLedger(db), clock=self.clock)
            return await tracker.sweep_inactive(threshold)

    async def export_previous_day(self) -> bool:
        """Export yesterday's summary unless the marker says it is done"""
        today = start_of_day(self.clock())
        window = TimeWindow(today - timedelta(days=1), today)
        day = window.start.date().isoformat()

        marker = self.redis_client.get(EXPORT_MARKER_KEY)
        if isinstance(marker, bytes):
            marker = marker.decode()
        if marker == day:
            return False

        async with self.database.session_factory() as db:
            service = AnalyticsService(db, VisitorLedger(db), clock=self.clock)
            summary = await service.summary(window.start, window.end)

        self.exporter.export(window.start.date(), summary)
        self.redis_client.set(EXPORT_MARKER_KEY, day)
        return True

    async def run_once(self) -> dict:
        token = self.acquire_lock()
        if token is None:
            logger.info("scheduler_tick_skipped", reason="lock_held")
            return {"ran": False, "expired": 0, "exported": False}

        try:
            expired = await self.sweep()
            exported = await self.export_previous_day()
        finally:
            self.release_lock(token)

        logger.info("scheduler_tick_completed", expired=expired, exported=exported)
        return {"ran": True, "expired": expired, "exported": exported}
