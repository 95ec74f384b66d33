from datetime import datetime
from typing import Optional

from visitrack.schemas.common import CamelModel


class OverviewMetrics(CamelModel):
    """Headline counters for one window"""
    total_events: int = 0
    total_sessions: int = 0
    total_users: int = 0
    total_page_views: int = 0
    total_purchases: int = 0
    total_revenue: float = 0.0
    conversion_rate: float = 0.0
    avg_session_duration: float = 0.0
    bounce_rate: float = 0.0


class Trend(CamelModel):
    """Percent change against the preceding window.

    ``change`` is None and ``is_new`` True when the previous value was 0
    and the current one is not.
    """
    current: float
    previous: float
    change: Optional[float] = 0.0
    is_new: bool = False


class Trends(CamelModel):
    total_events: Trend
    total_sessions: Trend
    total_users: Trend
    total_page_views: Trend
    total_purchases: Trend
    total_revenue: Trend
    conversion_rate: Trend
    avg_session_duration: Trend
    bounce_rate: Trend


class PageViewStat(CamelModel):
    page: str
    views: int
    unique_users: int


class EventTypeCount(CamelModel):
    type: str
    count: int
    percentage: float


class ActivityPoint(CamelModel):
    date: str
    users: int
    sessions: int
    events: int


class CountryStat(CamelModel):
    country: str
    sessions: int
    users: int


class DeviceStat(CamelModel):
    device: str
    count: int
    percentage: float


class DashboardMetrics(CamelModel):
    overview: OverviewMetrics
    trends: Trends
    top_pages: list[PageViewStat]
    event_breakdown: list[EventTypeCount]
    user_activity: list[ActivityPoint]
    geographic_data: list[CountryStat]
    device_breakdown: list[DeviceStat]


class ActiveUsers(CamelModel):
    daily: int
    weekly: int
    monthly: int


class TopUser(CamelModel):
    user_id: str
    events: int
    purchases: int
    revenue: float


class NewVsReturning(CamelModel):
    new_users: int
    returning_users: int


class RetentionWindow(CamelModel):
    """Single retention window data"""
    week: int
    week_start: str
    retained_users: int
    retention_rate: float


class RetentionResponse(CamelModel):
    """Cohort retention response"""
    start_date: str
    cohort_size: int
    retention: list[RetentionWindow]


class UserInsights(CamelModel):
    active_users: ActiveUsers
    top_users_by_events: list[TopUser]
    new_vs_returning: NewVsReturning
    user_retention: RetentionResponse


class DailyStat(CamelModel):
    date: str
    total_events: int
    events_by_type: dict[str, int]


class RealtimeWindow(CamelModel):
    active_users: int
    events: int
    page_views: int
    purchases: int


class RealtimeSnapshot(CamelModel):
    last_15_minutes: RealtimeWindow
    last_hour: RealtimeWindow
    top_pages: list[PageViewStat]
    event_breakdown: list[EventTypeCount]


class OverviewSnapshot(CamelModel):
    today: OverviewMetrics
    week: OverviewMetrics
    month: OverviewMetrics
    trends: Trends


class FunnelStep(CamelModel):
    step: str
    users: int
    conversion_rate: float


class Conversions(CamelModel):
    conversion_rate: float
    total_purchases: int
    total_revenue: float
    avg_order_value: float
    funnel: list[FunnelStep]


class CountryBreakdown(CamelModel):
    countries: list[CountryStat]


class DeviceBreakdown(CamelModel):
    devices: list[DeviceStat]


class SummaryPeriod(CamelModel):
    start: datetime
    end: datetime


class AnalyticsSummary(CamelModel):
    """Flat, schema-stable snapshot consumed by the export job"""
    period: SummaryPeriod
    total_users: int
    total_sessions: int
    total_events: int
    total_page_views: int
    total_purchases: int
    total_revenue: float
    avg_session_duration: float
    bounce_rate: float
    conversion_rate: float
    top_pages: list[PageViewStat]
    event_breakdown: dict[str, int]


class EventStats(CamelModel):
    total_events: int
    events_by_type: dict[str, int]
    top_pages: list[PageViewStat]
    daily_stats: list[DailyStat]
