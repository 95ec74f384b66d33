from enum import Enum

from sqlalchemy import Column, String, Integer, BigInteger, Index

from visitrack.models.base import Base, UTCDateTime


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"
    EXPIRED = "EXPIRED"


class Session(Base):
    __tablename__ = "sessions"

    session_id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=SessionStatus.ACTIVE.value, index=True)
    start_time = Column(UTCDateTime, nullable=False, index=True)
    end_time = Column(UTCDateTime, nullable=True)
    duration = Column(BigInteger, nullable=True)  # milliseconds
    page_views = Column(Integer, nullable=False, default=0)
    event_count = Column(Integer, nullable=False, default=0)
    entry_page = Column(String(2048), nullable=True)
    exit_page = Column(String(2048), nullable=True)
    device = Column(String(64), nullable=True, index=True)
    browser = Column(String(64), nullable=True)
    os = Column(String(64), nullable=True)
    country = Column(String(64), nullable=True, index=True)
    region = Column(String(128), nullable=True)
    city = Column(String(128), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(1024), nullable=True)
    last_activity_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index('idx_sessions_user_start', 'user_id', 'start_time'),
        Index('idx_sessions_status_activity', 'status', 'last_activity_at'),
    )
