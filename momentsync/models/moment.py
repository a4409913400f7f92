from sqlalchemy import (
    Column, String, Integer, Boolean, Text, JSON,
    DateTime, Index, Enum as SAEnum,
)
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timedelta, timezone
from typing import Optional
import enum
import uuid

from momentsync.storage.database import Base


def generate_client_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_happened_at(submitted_at: datetime, time_ago_seconds: Optional[int]) -> datetime:
    if time_ago_seconds:
        return submitted_at - timedelta(seconds=time_ago_seconds)
    return submitted_at


def normalize_tags(tags) -> list[str]:
    """Ordered set: keeps first occurrence, drops blanks."""
    seen: list[str] = []
    for tag in tags or []:
        if tag and tag not in seen:
            seen.append(tag)
    return seen


class UTCDateTime(TypeDecorator):
    """SQLite drops tzinfo; store UTC and hand back aware datetimes."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class ArchivePending(str, enum.Enum):
    none = "none"
    archive = "archive"
    restore = "restore"


class SyncState(str, enum.Enum):
    unsynced = "unsynced"
    syncing = "syncing"
    synced = "synced"
    sync_failed = "syncFailed"


class Moment(Base):
    __tablename__ = "moments"
    __table_args__ = (
        Index("ix_moments_submitted_seq", "submitted_at", "local_seq"),
        Index("ix_moments_archived", "is_archived"),
    )

    client_id = Column(String, primary_key=True, default=generate_client_id)
    server_id = Column(String, nullable=True, unique=True)
    local_seq = Column(Integer, nullable=False, default=0)  # insertion order tie-break

    text = Column(Text, nullable=False, default="")
    submitted_at = Column(UTCDateTime, nullable=False)
    happened_at = Column(UTCDateTime, nullable=False)
    timezone = Column(String, nullable=False, default="UTC")
    time_ago_seconds = Column(Integer, nullable=True)

    offline_praise = Column(Text, nullable=False, default="")

    # Server-enriched
    enriched_praise = Column(Text, nullable=True)
    action = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)

    is_favorite = Column(Boolean, nullable=False, default=False)
    favorite_pending = Column(Boolean, nullable=False, default=False)

    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(UTCDateTime, nullable=True)
    archive_pending = Column(SAEnum(ArchivePending), nullable=False, default=ArchivePending.none)

    last_sync_error = Column(Text, nullable=True)
    sync_error_terminal = Column(Boolean, nullable=False, default=False)
    sync_attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def display_praise(self) -> str:
        return self.enriched_praise or self.offline_praise

    @property
    def needs_enrichment(self) -> bool:
        return self.server_id is not None and not self.enriched_praise

    def base_sync_state(self) -> SyncState:
        """Persisted view of the sync state; `syncing` is layered on by the engine.

        An enriched moment is always synced; a later favorite or archive
        failure shows up in last_sync_error only.
        """
        if self.enriched_praise:
            return SyncState.synced
        if self.last_sync_error:
            return SyncState.sync_failed
        if self.server_id:
            return SyncState.synced
        return SyncState.unsynced

    def __repr__(self) -> str:
        return f"<Moment {self.client_id} server_id={self.server_id}>"
