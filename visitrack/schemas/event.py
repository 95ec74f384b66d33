# Pydantic schemas

from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from visitrack.models.event import EventType
from visitrack.schemas.common import CamelModel

MAX_BATCH_SIZE = 1000


class EventMetadata(CamelModel):
    """Recognized device/geo keys; anything else passes through untouched"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow"
    )

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None


class EventCreate(CamelModel):
    """Schema for creating a single event"""

    event_id: Optional[str] = Field(default=None, min_length=1, max_length=255)
    user_id: str = Field(..., min_length=1, max_length=255)
    session_id: str = Field(..., min_length=1, max_length=255)
    event_type: EventType
    timestamp: Optional[datetime] = None
    properties: dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    page_url: Optional[str] = Field(default=None, max_length=2048)
    referrer: Optional[str] = Field(default=None, max_length=2048)
    duration: Optional[float] = Field(default=None, ge=0)

    @field_validator('user_id', 'session_id')
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('Field cannot be empty or whitespace')
        return v.strip()


class EventBatchCreate(CamelModel):
    """Schema for batch event creation.

    Items stay untyped here so one malformed event is rejected on its own
    instead of failing the whole batch.
    """

    events: list[Any] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)


class EventResponse(CamelModel):
    """Response schema for event operations"""

    event_id: str
    user_id: str
    session_id: str
    event_type: EventType
    timestamp: datetime
    properties: dict[str, Any]
    event_metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("event_metadata", "metadata"),
        serialization_alias="metadata"
    )
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    duration: Optional[float] = None


class BatchRejection(CamelModel):
    index: int
    event_id: Optional[str] = None
    code: str
    message: str


class BatchIngestResponse(CamelModel):
    """Response for batch ingestion"""

    total_received: int
    accepted: int
    rejected: list[BatchRejection]


class JourneySession(CamelModel):
    session_id: str
    start_time: datetime
    end_time: datetime
    event_count: int
    events: list[EventResponse]


class EventTypeInfo(CamelModel):
    type: EventType
    description: str
