from datetime import date, datetime, time, timedelta, timezone
from typing import List

import pandas as pd
from sqlalchemy import select, func, case, desc, asc
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from visitrack.core.errors import ValidationError
from visitrack.models.event import Event, EventType
from visitrack.models.session import Session
from visitrack.schemas.analytics import (
    ActiveUsers,
    ActivityPoint,
    AnalyticsSummary,
    Conversions,
    CountryStat,
    DailyStat,
    DashboardMetrics,
    DeviceStat,
    EventStats,
    EventTypeCount,
    FunnelStep,
    NewVsReturning,
    OverviewMetrics,
    OverviewSnapshot,
    PageViewStat,
    RealtimeSnapshot,
    RealtimeWindow,
    RetentionResponse,
    RetentionWindow,
    SummaryPeriod,
    TopUser,
    Trend,
    Trends,
    UserInsights,
)
from visitrack.services.ledger import VisitorLedger
from visitrack.services.queries import (
    in_window,
    count_in_window,
    sum_in_window,
    avg_in_window,
    group_by_field,
    top_n_by_field,
)
from visitrack.services.windows import (
    Clock,
    TimeWindow,
    percent_change,
    percentage,
    round2,
    start_of_day,
    trailing_days,
    utcnow,
)

logger = structlog.get_logger()

FUNNEL_STEPS = (
    EventType.PAGE_VIEW,
    EventType.PRODUCT_VIEW,
    EventType.ADD_TO_CART,
    EventType.PURCHASE,
)

MAX_DAILY_STATS_DAYS = 366


class AnalyticsService:
    """Read-only window metrics over events, sessions and the visitor ledger.

    Each public method issues several independent queries; under concurrent
    writes the parts of one answer may reflect slightly different instants.
    """

    def __init__(self, db: AsyncSession, ledger: VisitorLedger, clock: Clock = utcnow):
        self.db = db
        self.ledger = ledger
        self.clock = clock

    async def overview(self, window: TimeWindow) -> OverviewMetrics:
        """Headline counters for one window"""
        total_events = await count_in_window(self.db, Event.timestamp, window)
        total_users = await count_in_window(self.db, Event.timestamp, window, distinct=Event.user_id)
        page_views = await count_in_window(
            self.db, Event.timestamp, window, Event.event_type == EventType.PAGE_VIEW.value
        )
        purchases = await count_in_window(
            self.db, Event.timestamp, window, Event.event_type == EventType.PURCHASE.value
        )
        revenue = await sum_in_window(
            self.db, Event.revenue, Event.timestamp, window, Event.event_type == EventType.PURCHASE.value
        )

        total_sessions = await count_in_window(self.db, Session.start_time, window)
        bounced = await count_in_window(self.db, Session.start_time, window, Session.page_views <= 1)
        avg_duration = await avg_in_window(self.db, Session.duration, Session.start_time, window)

        return OverviewMetrics(
            total_events=total_events,
            total_sessions=total_sessions,
            total_users=total_users,
            total_page_views=page_views,
            total_purchases=purchases,
            total_revenue=round2(revenue),
            conversion_rate=percentage(purchases, page_views),
            avg_session_duration=round2(avg_duration),
            bounce_rate=percentage(bounced, total_sessions),
        )

    @staticmethod
    def trends(current: OverviewMetrics, previous: OverviewMetrics) -> Trends:
        values = {}
        for name in Trends.model_fields:
            now_value = getattr(current, name)
            then_value = getattr(previous, name)
            change, is_new = percent_change(now_value, then_value)
            values[name] = Trend(current=now_value, previous=then_value, change=change, is_new=is_new)
        return Trends(**values)

    async def top_pages(self, window: TimeWindow, limit: int = 10) -> List[PageViewStat]:
        """Page URLs by view count, ties broken by URL"""
        rows = await top_n_by_field(
            self.db,
            Event.page_url,
            Event.timestamp,
            window,
            limit,
            Event.event_type == EventType.PAGE_VIEW.value,
            Event.page_url.is_not(None),
            distinct=Event.user_id
        )
        return [PageViewStat(page=row.key, views=row.count, unique_users=row.distinct) for row in rows]

    async def event_breakdown(self, window: TimeWindow) -> List[EventTypeCount]:
        """Get event counts by type"""
        rows = await group_by_field(self.db, Event.event_type, Event.timestamp, window)
        total = sum(row.count for row in rows)

        logger.info("event_breakdown_query", types=len(rows), total=total)
        return [
            EventTypeCount(type=row.key, count=row.count, percentage=percentage(row.count, total))
            for row in rows
        ]

    async def user_activity(self, window: TimeWindow) -> List[ActivityPoint]:
        """Distinct users, distinct sessions and events per calendar day"""
        day = func.date(Event.timestamp)
        result = await self.db.execute(
            select(
                day.label("day"),
                func.count(func.distinct(Event.user_id)).label("users"),
                func.count(func.distinct(Event.session_id)).label("sessions"),
                func.count().label("events"),
            )
            .where(in_window(Event.timestamp, window))
            .group_by(day)
            .order_by(day)
        )
        return [
            ActivityPoint(date=str(row.day), users=row.users, sessions=row.sessions, events=row.events)
            for row in result
        ]

    async def geographic_data(self, window: TimeWindow, limit: int = 20) -> List[CountryStat]:
        rows = await top_n_by_field(
            self.db,
            Session.country,
            Session.start_time,
            window,
            limit,
            Session.country.is_not(None),
            distinct=Session.user_id
        )
        return [CountryStat(country=row.key, sessions=row.count, users=row.distinct) for row in rows]

    async def device_breakdown(self, window: TimeWindow) -> List[DeviceStat]:
        rows = await group_by_field(
            self.db, Session.device, Session.start_time, window, default_key="Unknown"
        )
        total = sum(row.count for row in rows)
        return [
            DeviceStat(device=row.key, count=row.count, percentage=percentage(row.count, total))
            for row in rows
        ]

    async def dashboard_metrics(self, start: datetime, end: datetime) -> DashboardMetrics:
        """Overview, trends against the preceding window, and breakdowns"""
        window = TimeWindow(start, end)

        current = await self.overview(window)
        previous = await self.overview(window.previous())

        metrics = DashboardMetrics(
            overview=current,
            trends=self.trends(current, previous),
            top_pages=await self.top_pages(window, 10),
            event_breakdown=await self.event_breakdown(window),
            user_activity=await self.user_activity(window),
            geographic_data=await self.geographic_data(window),
            device_breakdown=await self.device_breakdown(window),
        )

        logger.info(
            "dashboard_metrics_computed",
            start=window.start.isoformat(),
            end=window.end.isoformat(),
            total_events=current.total_events
        )
        return metrics

    async def page_view_stats(self, start: datetime, end: datetime, top_n: int = 10) -> List[PageViewStat]:
        if top_n < 1:
            raise ValidationError("top_n must be at least 1")
        return await self.top_pages(TimeWindow(start, end), top_n)

    async def top_users(self, window: TimeWindow, limit: int = 10) -> List[TopUser]:
        is_purchase = Event.event_type == EventType.PURCHASE.value
        result = await self.db.execute(
            select(
                Event.user_id,
                func.count().label("events"),
                func.coalesce(func.sum(case((is_purchase, 1), else_=0)), 0).label("purchases"),
                func.coalesce(func.sum(case((is_purchase, Event.revenue), else_=0)), 0).label("revenue"),
            )
            .where(in_window(Event.timestamp, window))
            .group_by(Event.user_id)
            .order_by(desc("events"), asc(Event.user_id))
            .limit(limit)
        )
        return [
            TopUser(
                user_id=row.user_id,
                events=row.events,
                purchases=int(row.purchases),
                revenue=round2(row.revenue)
            )
            for row in result
        ]

    async def user_insights(self, start: datetime, end: datetime) -> UserInsights:
        window = TimeWindow(start, end)

        active_users = ActiveUsers(
            daily=await count_in_window(
                self.db, Event.timestamp, TimeWindow.trailing(window.end, timedelta(days=1)),
                distinct=Event.user_id
            ),
            weekly=await count_in_window(
                self.db, Event.timestamp, TimeWindow.trailing(window.end, timedelta(days=7)),
                distinct=Event.user_id
            ),
            monthly=await count_in_window(
                self.db, Event.timestamp, TimeWindow.trailing(window.end, timedelta(days=30)),
                distinct=Event.user_id
            ),
        )

        active_ids = select(Event.user_id).where(in_window(Event.timestamp, window)).distinct()
        split = await self.ledger.new_vs_returning(active_ids, window)

        return UserInsights(
            active_users=active_users,
            top_users_by_events=await self.top_users(window, 10),
            new_vs_returning=NewVsReturning(**split),
            user_retention=await self.cohort_retention(window.start.date(), 4),
        )

    async def cohort_retention(self, start_date: date, windows: int = 3) -> RetentionResponse:
        """Calculate weekly cohort retention.

        The cohort is every user with an event in the week starting at
        ``start_date``; each following week reports how many of them came back.
        """
        if not 1 <= windows <= 12:
            raise ValidationError("windows must be between 1 and 12")

        cohort_start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
        cohort_window = TimeWindow(cohort_start, cohort_start + timedelta(weeks=1))

        cohort_ids = select(Event.user_id).where(in_window(Event.timestamp, cohort_window)).distinct()
        cohort_size = await count_in_window(self.db, Event.timestamp, cohort_window, distinct=Event.user_id)

        if cohort_size == 0:
            return RetentionResponse(start_date=str(start_date), cohort_size=0, retention=[])

        retention_rates = []
        for week in range(1, windows + 1):
            week_window = TimeWindow(
                cohort_start + timedelta(weeks=week),
                cohort_start + timedelta(weeks=week + 1)
            )
            retained_users = await count_in_window(
                self.db,
                Event.timestamp,
                week_window,
                Event.user_id.in_(cohort_ids),
                distinct=Event.user_id
            )
            retention_rates.append(RetentionWindow(
                week=week,
                week_start=week_window.start.date().isoformat(),
                retained_users=retained_users,
                retention_rate=percentage(retained_users, cohort_size),
            ))

        logger.info("retention_query", start_date=str(start_date), cohort_size=cohort_size)
        return RetentionResponse(start_date=str(start_date), cohort_size=cohort_size, retention=retention_rates)

    async def daily_stats(self, days: int = 30) -> List[DailyStat]:
        """One bucket per UTC calendar day for the trailing ``days`` days.

        Days without events are present with zero counts, so the series is
        always contiguous and exactly ``days`` long.
        """
        if not 1 <= days <= MAX_DAILY_STATS_DAYS:
            raise ValidationError(f"days must be between 1 and {MAX_DAILY_STATS_DAYS}")

        today = start_of_day(self.clock())
        window = TimeWindow(today - timedelta(days=days - 1), today + timedelta(days=1))

        day = func.date(Event.timestamp)
        result = await self.db.execute(
            select(day.label("day"), Event.event_type, func.count().label("n"))
            .where(in_window(Event.timestamp, window))
            .group_by(day, Event.event_type)
        )
        frame = pd.DataFrame(
            [(str(row.day), row.event_type, row.n) for row in result],
            columns=["date", "event_type", "count"]
        )

        index = [d.isoformat() for d in trailing_days(days, today.date())]
        if frame.empty:
            pivot = pd.DataFrame(index=index)
        else:
            pivot = frame.pivot_table(
                index="date", columns="event_type", values="count", aggfunc="sum", fill_value=0
            )
        pivot = pivot.reindex(index, fill_value=0)

        return [
            DailyStat(
                date=date_key,
                total_events=int(row.sum()),
                events_by_type={str(k): int(v) for k, v in row.items() if v}
            )
            for date_key, row in pivot.iterrows()
        ]

    async def event_stats(self, start: datetime, end: datetime) -> EventStats:
        window = TimeWindow(start, end)
        breakdown = await self.event_breakdown(window)
        return EventStats(
            total_events=sum(item.count for item in breakdown),
            events_by_type={item.type: item.count for item in breakdown},
            top_pages=await self.top_pages(window, 10),
            daily_stats=await self.daily_stats(30),
        )

    async def realtime_snapshot(self) -> RealtimeSnapshot:
        """Trailing 15-minute and 1-hour activity, recomputed on every call"""
        now = self.clock()
        recent = await self.dashboard_metrics(now - timedelta(minutes=15), now)
        hourly = await self.dashboard_metrics(now - timedelta(hours=1), now)

        def window_counts(metrics: DashboardMetrics) -> RealtimeWindow:
            return RealtimeWindow(
                active_users=metrics.overview.total_users,
                events=metrics.overview.total_events,
                page_views=metrics.overview.total_page_views,
                purchases=metrics.overview.total_purchases,
            )

        return RealtimeSnapshot(
            last_15_minutes=window_counts(recent),
            last_hour=window_counts(hourly),
            top_pages=recent.top_pages[:5],
            event_breakdown=recent.event_breakdown[:5],
        )

    async def overview_snapshot(self) -> OverviewSnapshot:
        """Today, last 7 days and last 30 days, with 30-day trends"""
        now = self.clock()
        today = start_of_day(now)
        month = TimeWindow.trailing(now, timedelta(days=30))
        month_overview = await self.overview(month)

        return OverviewSnapshot(
            today=await self.overview(TimeWindow(today, today + timedelta(days=1))),
            week=await self.overview(TimeWindow.trailing(now, timedelta(days=7))),
            month=month_overview,
            trends=self.trends(month_overview, await self.overview(month.previous())),
        )

    async def conversions(self, start: datetime, end: datetime) -> Conversions:
        """Purchase conversion plus a distinct-user funnel"""
        window = TimeWindow(start, end)
        overview = await self.overview(window)

        funnel = []
        previous_users = None
        for step in FUNNEL_STEPS:
            users = await count_in_window(
                self.db, Event.timestamp, window, Event.event_type == step.value, distinct=Event.user_id
            )
            if previous_users is None:
                rate = 100.0 if users else 0.0
            else:
                rate = percentage(users, previous_users)
            funnel.append(FunnelStep(step=step.value, users=users, conversion_rate=rate))
            previous_users = users

        avg_order_value = (
            round2(overview.total_revenue / overview.total_purchases) if overview.total_purchases else 0.0
        )
        return Conversions(
            conversion_rate=overview.conversion_rate,
            total_purchases=overview.total_purchases,
            total_revenue=overview.total_revenue,
            avg_order_value=avg_order_value,
            funnel=funnel,
        )

    async def summary(self, start: datetime, end: datetime) -> AnalyticsSummary:
        """Flat snapshot for export; every event type is always present"""
        window = TimeWindow(start, end)
        overview = await self.overview(window)
        counts = {row.type: row.count for row in await self.event_breakdown(window)}

        return AnalyticsSummary(
            period=SummaryPeriod(start=window.start, end=window.end),
            total_users=overview.total_users,
            total_sessions=overview.total_sessions,
            total_events=overview.total_events,
            total_page_views=overview.total_page_views,
            total_purchases=overview.total_purchases,
            total_revenue=overview.total_revenue,
            avg_session_duration=overview.avg_session_duration,
            bounce_rate=overview.bounce_rate,
            conversion_rate=overview.conversion_rate,
            top_pages=await self.top_pages(window, 20),
            event_breakdown={t.value: counts.get(t.value, 0) for t in EventType},
        )
