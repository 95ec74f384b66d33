from datetime import datetime
from typing import Optional

from pydantic import Field

from visitrack.models.session import SessionStatus
from visitrack.schemas.common import CamelModel


class SessionAttributes(CamelModel):
    """Device/geo attributes captured when a session starts"""

    device: Optional[str] = Field(default=None, max_length=64)
    browser: Optional[str] = Field(default=None, max_length=64)
    os: Optional[str] = Field(default=None, max_length=64)
    country: Optional[str] = Field(default=None, max_length=64)
    region: Optional[str] = Field(default=None, max_length=128)
    city: Optional[str] = Field(default=None, max_length=128)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=1024)
    entry_page: Optional[str] = Field(default=None, max_length=2048)


class SessionCreate(SessionAttributes):
    user_id: str = Field(..., min_length=1, max_length=255)
    session_id: Optional[str] = Field(default=None, min_length=1, max_length=255)


class SessionEnd(CamelModel):
    exit_page: Optional[str] = Field(default=None, max_length=2048)


class SessionResponse(CamelModel):
    session_id: str
    user_id: str
    status: SessionStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    page_views: int
    event_count: int
    entry_page: Optional[str] = None
    exit_page: Optional[str] = None
    device: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    last_activity_at: datetime


class SweepResponse(CamelModel):
    expired_count: int
    inactive_minutes: int


class DeviceSessions(CamelModel):
    device: str
    count: int


class CountrySessions(CamelModel):
    country: str
    sessions: int
    unique_users: int
    avg_duration: float


class SessionStats(CamelModel):
    total_sessions: int
    active_sessions: int
    avg_duration: float
    avg_page_views: float
    bounce_rate: float
    sessions_by_device: list[DeviceSessions]
    sessions_by_country: list[CountrySessions]
