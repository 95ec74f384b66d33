from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from visitrack.api.deps import (
    get_analytics_service,
    get_event_store,
    get_optional_window,
    get_window,
    require_api_key,
)
from visitrack.models.event import EventType
from visitrack.schemas.analytics import DailyStat, EventStats, PageViewStat
from visitrack.schemas.common import ApiResponse, PageMeta
from visitrack.schemas.event import (
    BatchIngestResponse,
    EventBatchCreate,
    EventCreate,
    EventResponse,
    EventTypeInfo,
    JourneySession,
)
from visitrack.services.analytics import AnalyticsService
from visitrack.services.events import EventStore
from visitrack.services.windows import TimeWindow

router = APIRouter(prefix="/events", tags=["events"])

EVENT_TYPE_DESCRIPTIONS = {
    EventType.SESSION_START: "A visitor session begins",
    EventType.SESSION_END: "A visitor session ends",
    EventType.PAGE_VIEW: "A page was viewed",
    EventType.PRODUCT_VIEW: "A product detail was viewed",
    EventType.ADD_TO_CART: "A product was added to the cart",
    EventType.REMOVE_FROM_CART: "A product was removed from the cart",
    EventType.PURCHASE: "An order was completed; properties.amount carries revenue",
    EventType.SEARCH: "A search was performed",
    EventType.CLICK: "An element was clicked",
    EventType.SCROLL: "The page was scrolled",
}


@router.post("", response_model=ApiResponse[EventResponse], status_code=status.HTTP_201_CREATED)
async def track_event(
        payload: EventCreate,
        store: EventStore = Depends(get_event_store)
):
    """
    Track a single event.

    - **eventId**: optional idempotency key; a repeated id is rejected with 409
    - **sessionId**: SESSION_START creates the session, SESSION_END ends it
    """
    event = await store.ingest(payload)
    return ApiResponse(data=EventResponse.model_validate(event))


@router.post("/batch", response_model=ApiResponse[BatchIngestResponse], status_code=status.HTTP_201_CREATED)
async def track_events_batch(
        batch: EventBatchCreate,
        store: EventStore = Depends(get_event_store)
):
    """
    Ingest a batch of events. Each event is accepted or rejected on its own.

    - **events**: list of events to ingest (max 1000)
    """
    result = await store.ingest_batch(batch.events)
    return ApiResponse(data=result)


@router.get("/types", response_model=ApiResponse[List[EventTypeInfo]])
async def list_event_types():
    """List the supported event types"""
    return ApiResponse(data=[
        EventTypeInfo(type=event_type, description=description)
        for event_type, description in EVENT_TYPE_DESCRIPTIONS.items()
    ])


@router.get("", response_model=ApiResponse[List[EventResponse]], dependencies=[Depends(require_api_key)])
async def search_events(
        user_id: Optional[str] = Query(default=None, alias="userId"),
        session_id: Optional[str] = Query(default=None, alias="sessionId"),
        event_type: Optional[EventType] = Query(default=None, alias="eventType"),
        page_url: Optional[str] = Query(default=None, alias="pageUrl", description="Substring match"),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=50, ge=1, le=1000),
        sort_by: str = Query(default="timestamp", alias="sortBy"),
        sort_order: str = Query(default="desc", alias="sortOrder", pattern="^(asc|desc)$"),
        window: Optional[TimeWindow] = Depends(get_optional_window),
        store: EventStore = Depends(get_event_store)
):
    """
    Search events with filters and pagination.

    - **startDate** / **endDate**: half-open range on the event timestamp
    - **sortBy**: timestamp, eventType, userId, sessionId or pageUrl
    """
    events, total, total_pages = await store.query(
        user_id=user_id,
        session_id=session_id,
        event_type=event_type,
        page_url=page_url,
        window=window,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order
    )
    return ApiResponse(
        data=[EventResponse.model_validate(e) for e in events],
        meta=PageMeta(page=page, limit=limit, total=total, total_pages=total_pages)
    )


@router.get("/stats", response_model=ApiResponse[EventStats], dependencies=[Depends(require_api_key)])
async def event_stats(
        window: TimeWindow = Depends(get_window),
        service: AnalyticsService = Depends(get_analytics_service)
):
    """Totals by type, top pages and the trailing 30-day daily series"""
    return ApiResponse(data=await service.event_stats(window.start, window.end))


@router.get("/daily-stats", response_model=ApiResponse[List[DailyStat]], dependencies=[Depends(require_api_key)])
async def daily_stats(
        days: int = Query(default=30, ge=1, le=366),
        service: AnalyticsService = Depends(get_analytics_service)
):
    """
    Per-day event counts, zero-filled.

    - **days**: number of calendar days ending today (UTC)
    """
    return ApiResponse(data=await service.daily_stats(days))


@router.get("/page-views", response_model=ApiResponse[List[PageViewStat]], dependencies=[Depends(require_api_key)])
async def page_views(
        limit: int = Query(default=10, ge=1, le=100),
        window: TimeWindow = Depends(get_window),
        service: AnalyticsService = Depends(get_analytics_service)
):
    """Most viewed pages with distinct visitors"""
    return ApiResponse(data=await service.page_view_stats(window.start, window.end, limit))


@router.get(
    "/user/{user_id}/journey",
    response_model=ApiResponse[List[JourneySession]],
    dependencies=[Depends(require_api_key)]
)
async def user_journey(
        user_id: str,
        window: Optional[TimeWindow] = Depends(get_optional_window),
        store: EventStore = Depends(get_event_store)
):
    """A user's events grouped by session, newest session first"""
    return ApiResponse(data=await store.user_journey(user_id, window))


@router.get("/user/{user_id}", response_model=ApiResponse[List[EventResponse]], dependencies=[Depends(require_api_key)])
async def user_events(
        user_id: str,
        limit: int = Query(default=100, ge=1, le=1000),
        window: Optional[TimeWindow] = Depends(get_optional_window),
        store: EventStore = Depends(get_event_store)
):
    events = await store.by_user(user_id, window, limit)
    return ApiResponse(data=[EventResponse.model_validate(e) for e in events])


@router.get(
    "/session/{session_id}",
    response_model=ApiResponse[List[EventResponse]],
    dependencies=[Depends(require_api_key)]
)
async def session_events(
        session_id: str,
        store: EventStore = Depends(get_event_store)
):
    events = await store.by_session(session_id)
    return ApiResponse(data=[EventResponse.model_validate(e) for e in events])


@router.get("/{event_id}", response_model=ApiResponse[EventResponse], dependencies=[Depends(require_api_key)])
async def get_event(
        event_id: str,
        store: EventStore = Depends(get_event_store)
):
    event = await store.get(event_id)
    return ApiResponse(data=EventResponse.model_validate(event))
