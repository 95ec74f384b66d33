# GET /analytics/*

from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
import structlog

from visitrack.api.deps import get_analytics_service, get_clock, get_window, require_api_key
from visitrack.schemas.analytics import (
    AnalyticsSummary,
    Conversions,
    CountryBreakdown,
    DashboardMetrics,
    DeviceBreakdown,
    OverviewSnapshot,
    RealtimeSnapshot,
    RetentionResponse,
    UserInsights,
)
from visitrack.schemas.common import ApiResponse
from visitrack.services.analytics import AnalyticsService
from visitrack.services.windows import Clock, TimeWindow

logger = structlog.get_logger()
router = APIRouter(prefix="/analytics", tags=["analytics"], dependencies=[Depends(require_api_key)])


@router.get("/dashboard", response_model=ApiResponse[DashboardMetrics])
async def dashboard(
        window: TimeWindow = Depends(get_window),
        service: AnalyticsService = Depends(get_analytics_service)
):
    """
    Dashboard metrics for a window, with trends against the preceding window.

    - **startDate**: window start (inclusive), defaults to 30 days before endDate
    - **endDate**: window end (exclusive), defaults to now
    """
    return ApiResponse(data=await service.dashboard_metrics(window.start, window.end))


@router.get("/overview", response_model=ApiResponse[OverviewSnapshot])
async def overview(service: AnalyticsService = Depends(get_analytics_service)):
    """Today, last 7 days and last 30 days"""
    return ApiResponse(data=await service.overview_snapshot())


@router.get("/realtime", response_model=ApiResponse[RealtimeSnapshot])
async def realtime(service: AnalyticsService = Depends(get_analytics_service)):
    """Activity in the trailing 15 minutes and hour"""
    return ApiResponse(data=await service.realtime_snapshot())


@router.get("/user-insights", response_model=ApiResponse[UserInsights])
async def user_insights(
        window: TimeWindow = Depends(get_window),
        service: AnalyticsService = Depends(get_analytics_service)
):
    return ApiResponse(data=await service.user_insights(window.start, window.end))


@router.get("/conversions", response_model=ApiResponse[Conversions])
async def conversions(
        window: TimeWindow = Depends(get_window),
        service: AnalyticsService = Depends(get_analytics_service)
):
    return ApiResponse(data=await service.conversions(window.start, window.end))


@router.get("/geographic", response_model=ApiResponse[CountryBreakdown])
async def geographic(
        window: TimeWindow = Depends(get_window),
        service: AnalyticsService = Depends(get_analytics_service)
):
    return ApiResponse(data=CountryBreakdown(countries=await service.geographic_data(window)))


@router.get("/devices", response_model=ApiResponse[DeviceBreakdown])
async def devices(
        window: TimeWindow = Depends(get_window),
        service: AnalyticsService = Depends(get_analytics_service)
):
    return ApiResponse(data=DeviceBreakdown(devices=await service.device_breakdown(window)))


@router.get("/summary", response_model=ApiResponse[AnalyticsSummary])
async def summary(
        window: TimeWindow = Depends(get_window),
        service: AnalyticsService = Depends(get_analytics_service)
):
    """Flat snapshot, the same shape the daily export writes"""
    return ApiResponse(data=await service.summary(window.start, window.end))


@router.get("/retention", response_model=ApiResponse[RetentionResponse])
async def retention(
        start_date: Optional[date] = Query(default=None, alias="startDate", description="Cohort week start (YYYY-MM-DD)"),
        windows: int = Query(default=3, ge=1, le=12, description="Number of weeks to track"),
        clock: Clock = Depends(get_clock),
        service: AnalyticsService = Depends(get_analytics_service)
):
    """
    Calculate weekly cohort retention.

    - **startDate**: start of the cohort week, defaults to windows + 1 weeks ago
    - **windows**: number of following weeks to report (max 12)
    """
    if start_date is None:
        start_date = (clock() - timedelta(weeks=windows + 1)).date()

    result = await service.cohort_retention(start_date, windows)
    logger.info("retention_query_executed", start_date=str(start_date), windows=windows)
    return ApiResponse(data=result)
