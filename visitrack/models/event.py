# SQLAlchemy models

from enum import Enum

from sqlalchemy import Column, String, Float, JSON, Index

from visitrack.models.base import Base, UTCDateTime


class EventType(str, Enum):
    SESSION_START = "SESSION_START"
    SESSION_END = "SESSION_END"
    PAGE_VIEW = "PAGE_VIEW"
    PRODUCT_VIEW = "PRODUCT_VIEW"
    ADD_TO_CART = "ADD_TO_CART"
    REMOVE_FROM_CART = "REMOVE_FROM_CART"
    PURCHASE = "PURCHASE"
    SEARCH = "SEARCH"
    CLICK = "CLICK"
    SCROLL = "SCROLL"


class Event(Base):
    __tablename__ = "events"

    event_id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    session_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(32), nullable=False, index=True)
    timestamp = Column(UTCDateTime, nullable=False, index=True)
    properties = Column(JSON, nullable=False, default=dict)
    # Column attribute name "metadata" is reserved by the declarative base
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)
    page_url = Column(String(2048), nullable=True, index=True)
    referrer = Column(String(2048), nullable=True)
    duration = Column(Float, nullable=True)
    revenue = Column(Float, nullable=False, default=0.0)
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        # Composite indexes for common query patterns
        Index('idx_events_user_ts', 'user_id', 'timestamp'),
        Index('idx_events_session_ts', 'session_id', 'timestamp'),
        Index('idx_events_type_ts', 'event_type', 'timestamp'),
        Index('idx_events_page_ts', 'page_url', 'timestamp'),
    )
