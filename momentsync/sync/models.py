"""
SQLAlchemy models for the sync engine.

- PageState: per-feed pagination cursor (moments, timeline, favorites)
"""

from sqlalchemy import Column, String, Boolean

from momentsync.models.moment import UTCDateTime, utcnow
from momentsync.storage.database import Base


class PageState(Base):
    __tablename__ = "sync_page_state"

    feed = Column(String, primary_key=True)         # "moments" | "moments:favorites" | "timeline"
    next_cursor = Column(String, nullable=True)
    has_next_page = Column(Boolean, nullable=False, default=False)
    limit_reached = Column(Boolean, nullable=False, default=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
