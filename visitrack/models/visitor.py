from sqlalchemy import Column, String, Integer, Float

from visitrack.models.base import Base, UTCDateTime


class Visitor(Base):
    """Running per-user totals maintained alongside ingestion"""

    __tablename__ = "visitors"

    user_id = Column(String(255), primary_key=True)
    total_events = Column(Integer, nullable=False, default=0)
    total_sessions = Column(Integer, nullable=False, default=0)
    total_purchases = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Float, nullable=False, default=0.0)
    first_seen = Column(UTCDateTime, nullable=False, index=True)
    last_seen = Column(UTCDateTime, nullable=False, index=True)
