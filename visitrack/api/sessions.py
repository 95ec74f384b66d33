from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from visitrack.api.deps import get_optional_window, get_session_tracker, get_window, require_api_key
from visitrack.models.session import SessionStatus
from visitrack.schemas.common import ApiResponse, PageMeta
from visitrack.schemas.session import (
    SessionAttributes,
    SessionCreate,
    SessionEnd,
    SessionResponse,
    SessionStats,
    SweepResponse,
)
from visitrack.services.sessions import SessionTracker
from visitrack.services.windows import TimeWindow

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("", response_model=ApiResponse[SessionResponse], status_code=status.HTTP_201_CREATED)
async def create_session(
        payload: SessionCreate,
        tracker: SessionTracker = Depends(get_session_tracker)
):
    """
    Start a session explicitly.

    - **sessionId**: optional; an id that already exists is rejected with 409
    """
    attrs = SessionAttributes.model_validate(payload.model_dump(include=set(SessionAttributes.model_fields)))
    session = await tracker.create(payload.user_id, attrs, session_id=payload.session_id)
    return ApiResponse(data=SessionResponse.model_validate(session))


@router.post("/expire-inactive", response_model=ApiResponse[SweepResponse], dependencies=[Depends(require_api_key)])
async def expire_inactive(
        inactive_minutes: int = Query(default=30, ge=1, alias="inactiveMinutes"),
        tracker: SessionTracker = Depends(get_session_tracker)
):
    """Expire ACTIVE sessions idle for longer than **inactiveMinutes**"""
    expired = await tracker.sweep_inactive(timedelta(minutes=inactive_minutes))
    return ApiResponse(data=SweepResponse(expired_count=expired, inactive_minutes=inactive_minutes))


@router.post("/{session_id}/end", response_model=ApiResponse[SessionResponse])
async def end_session(
        session_id: str,
        payload: Optional[SessionEnd] = Body(default=None),
        tracker: SessionTracker = Depends(get_session_tracker)
):
    """End a session. Ending an already ended or expired session changes nothing."""
    exit_page = payload.exit_page if payload else None
    session = await tracker.end_session(session_id, exit_page=exit_page)
    return ApiResponse(data=SessionResponse.model_validate(session))


@router.get("", response_model=ApiResponse[List[SessionResponse]], dependencies=[Depends(require_api_key)])
async def search_sessions(
        user_id: Optional[str] = Query(default=None, alias="userId"),
        session_status: Optional[SessionStatus] = Query(default=None, alias="status"),
        device: Optional[str] = None,
        country: Optional[str] = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=1000),
        sort_by: str = Query(default="startTime", alias="sortBy"),
        sort_order: str = Query(default="desc", alias="sortOrder", pattern="^(asc|desc)$"),
        window: Optional[TimeWindow] = Depends(get_optional_window),
        tracker: SessionTracker = Depends(get_session_tracker)
):
    """
    List sessions with filters and pagination.

    - **startDate** / **endDate**: half-open range on the session start time
    """
    sessions, total, total_pages = await tracker.search(
        user_id=user_id,
        status=session_status,
        device=device,
        country=country,
        window=window,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order
    )
    return ApiResponse(
        data=[SessionResponse.model_validate(s) for s in sessions],
        meta=PageMeta(page=page, limit=limit, total=total, total_pages=total_pages)
    )


@router.get("/active", response_model=ApiResponse[List[SessionResponse]], dependencies=[Depends(require_api_key)])
async def active_sessions(tracker: SessionTracker = Depends(get_session_tracker)):
    sessions = await tracker.active()
    return ApiResponse(data=[SessionResponse.model_validate(s) for s in sessions])


@router.get("/stats", response_model=ApiResponse[SessionStats], dependencies=[Depends(require_api_key)])
async def session_stats(
        window: TimeWindow = Depends(get_window),
        tracker: SessionTracker = Depends(get_session_tracker)
):
    return ApiResponse(data=await tracker.stats(window))


@router.get(
    "/user/{user_id}",
    response_model=ApiResponse[List[SessionResponse]],
    dependencies=[Depends(require_api_key)]
)
async def user_sessions(
        user_id: str,
        limit: int = Query(default=10, ge=1, le=100),
        tracker: SessionTracker = Depends(get_session_tracker)
):
    sessions = await tracker.by_user(user_id, limit)
    return ApiResponse(data=[SessionResponse.model_validate(s) for s in sessions])


@router.get("/{session_id}", response_model=ApiResponse[SessionResponse], dependencies=[Depends(require_api_key)])
async def get_session(
        session_id: str,
        tracker: SessionTracker = Depends(get_session_tracker)
):
    session = await tracker.get(session_id)
    return ApiResponse(data=SessionResponse.model_validate(session))
