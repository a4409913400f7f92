"""
Wire models for the remote moments API.

Field names follow the server's camelCase JSON; Python code uses the
snake_case attribute names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ── Moments ─────────────────────────────────────────────────────────────

class MomentDTO(WireModel):
    id: Optional[str] = None
    client_id: Optional[str] = Field(default=None, alias="clientId")
    text: str = ""
    submitted_at: Optional[str] = Field(default=None, alias="submittedAt")
    happened_at: Optional[str] = Field(default=None, alias="happenedAt")
    tz: Optional[str] = None
    time_ago: Optional[int] = Field(default=None, alias="timeAgo")
    praise: Optional[str] = None
    action: Optional[str] = None
    tags: Optional[list[str]] = None
    is_favorite: Optional[bool] = Field(default=None, alias="isFavorite")

    @property
    def is_enriched(self) -> bool:
        return bool(self.praise)


class MomentEnvelope(WireModel):
    item: MomentDTO


class CreateMomentRequest(WireModel):
    client_id: str = Field(alias="clientId")
    text: str
    submitted_at: str = Field(alias="submittedAt")
    tz: str
    time_ago: Optional[int] = Field(default=None, alias="timeAgo")


class UpdateMomentRequest(WireModel):
    is_favorite: bool = Field(alias="isFavorite")


# ── Timeline ────────────────────────────────────────────────────────────

class DaySummaryState(str, Enum):
    in_progress = "INPROGRESS"
    finalised = "FINALISED"


class DaySummaryDTO(WireModel):
    id: str
    date: str
    text: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    moments_count: int = Field(default=0, alias="momentsCount")
    times_of_day: list[str] = Field(default_factory=list, alias="timesOfDay")
    state: DaySummaryState = DaySummaryState.in_progress
    created_at: Optional[str] = Field(default=None, alias="createdAt")


# ── Pagination ──────────────────────────────────────────────────────────

ItemT = TypeVar("ItemT")


class Page(WireModel, Generic[ItemT]):
    data: list[ItemT] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")
    has_next_page: bool = Field(default=False, alias="hasNextPage")
    # Older servers omit the flag
    limit_reached: bool = Field(default=False, alias="limitReached")


# ── Errors ──────────────────────────────────────────────────────────────

class ErrorDetail(WireModel):
    code: str = "UNKNOWN"
    message: str = ""


class ErrorEnvelope(WireModel):
    error: ErrorDetail
    meta: Optional[dict[str, Any]] = None
