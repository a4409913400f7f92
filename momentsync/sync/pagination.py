"""
Cursor pagination over the server feeds, merged into the local store.

Feeds and their persisted cursor rows (sync_page_state):
  moments            GET /moments
  moments:favorites  GET /moments?isFavorite=true
  timeline           GET /timeline (day summaries, returned but not stored)

Free-tier accounts only see a rolling window; the server flags the
boundary with limitReached, after which no further page is requested.
"""

import logging
from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

from sqlalchemy.orm import sessionmaker

from momentsync.config.settings import Settings
from momentsync.models.moment import Moment
from momentsync.storage.database import session_scope
from momentsync.storage.repository import MomentRepository
from momentsync.sync.cloud import MomentsCloudClient
from momentsync.sync.errors import ValidationFailed
from momentsync.sync.models import PageState
from momentsync.sync.schemas import DaySummaryDTO

logger = logging.getLogger(__name__)

FEED_MOMENTS = "moments"
FEED_FAVORITES = "moments:favorites"
FEED_TIMELINE = "timeline"

ItemT = TypeVar("ItemT")


@dataclass
class PageResult(Generic[ItemT]):
    items: list = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_next_page: bool = False
    limit_reached: bool = False


@dataclass
class FeedState:
    feed: str
    next_cursor: Optional[str] = None
    has_next_page: bool = False
    limit_reached: bool = False
    loaded: bool = False

    @property
    def exhausted(self) -> bool:
        return self.loaded and (self.limit_reached or not self.has_next_page)


def moments_feed(favorites_only: bool) -> str:
    return FEED_FAVORITES if favorites_only else FEED_MOMENTS


class PaginationResolver:
    def __init__(
        self,
        repository: MomentRepository,
        cloud: MomentsCloudClient,
        session_factory: sessionmaker,
        settings: Settings,
    ):
        self.repository = repository
        self.cloud = cloud
        self._session_factory = session_factory
        self.settings = settings

    def validate_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.settings.page_size_default
        if not 1 <= limit <= self.settings.page_size_max:
            raise ValueError(
                f"limit must be between 1 and {self.settings.page_size_max}, got {limit}"
            )
        return limit

    # ── Local ───────────────────────────────────────────────────────

    def local_page(
        self,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        favorites_only: bool = False,
    ) -> PageResult[Moment]:
        """Page through the local store; no network."""
        limit = self.validate_limit(limit)
        items, next_cursor = self.repository.list_page(
            cursor=cursor, limit=limit, favorites_only=favorites_only,
        )
        return PageResult(
            items=items,
            next_cursor=next_cursor,
            has_next_page=next_cursor is not None,
        )

    # ── Moments ─────────────────────────────────────────────────────

    async def fetch_page(
        self,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        favorites_only: bool = False,
    ) -> PageResult[Moment]:
        """Fetch one server page and merge it into the store. Does not touch feed state."""
        limit = self.validate_limit(limit)
        page = await self.cloud.list_moments(
            cursor=cursor, limit=limit, is_favorite=True if favorites_only else None,
        )

        items: list[Moment] = []
        seen: set[str] = set()
        for dto in page.data:
            merged = self.repository.merge_remote(dto)
            if merged is None or merged.client_id in seen:
                continue
            seen.add(merged.client_id)
            # Archived locally but not yet on the server
            if merged.is_archived:
                continue
            items.append(merged)

        logger.info(
            "Fetched %d moment(s) (hasNextPage=%s, limitReached=%s)",
            len(page.data), page.has_next_page, page.limit_reached,
        )
        return PageResult(
            items=items,
            next_cursor=page.next_cursor if page.has_next_page else None,
            has_next_page=page.has_next_page,
            limit_reached=page.limit_reached,
        )

    async def load_first(
        self, favorites_only: bool = False, limit: Optional[int] = None,
    ) -> PageResult[Moment]:
        """Start the feed over from the newest page."""
        feed = moments_feed(favorites_only)
        result = await self._fetch_tracked(
            feed, lambda: self.fetch_page(None, limit, favorites_only),
        )
        return result

    async def load_more(
        self, favorites_only: bool = False, limit: Optional[int] = None,
    ) -> PageResult[Moment]:
        """Next page of the feed. Empty once the feed or the tier window is exhausted."""
        feed = moments_feed(favorites_only)
        state = self.get_state(feed)
        if not state.loaded:
            return await self.load_first(favorites_only, limit)
        if state.exhausted:
            logger.debug("Feed %s exhausted (limitReached=%s)", feed, state.limit_reached)
            return PageResult(limit_reached=state.limit_reached)
        return await self._fetch_tracked(
            feed, lambda: self.fetch_page(state.next_cursor, limit, favorites_only),
        )

    # ── Timeline ────────────────────────────────────────────────────

    async def fetch_timeline(
        self, cursor: Optional[str] = None, limit: Optional[int] = None,
    ) -> PageResult[DaySummaryDTO]:
        limit = self.validate_limit(limit)
        page = await self.cloud.list_timeline(cursor=cursor, limit=limit)
        logger.info("Fetched %d day summaries", len(page.data))
        return PageResult(
            items=list(page.data),
            next_cursor=page.next_cursor if page.has_next_page else None,
            has_next_page=page.has_next_page,
            limit_reached=page.limit_reached,
        )

    async def load_timeline(
        self, more: bool = False, limit: Optional[int] = None,
    ) -> PageResult[DaySummaryDTO]:
        state = self.get_state(FEED_TIMELINE)
        if more and state.loaded:
            if state.exhausted:
                return PageResult(limit_reached=state.limit_reached)
            cursor = state.next_cursor
        else:
            cursor = None
        return await self._fetch_tracked(
            FEED_TIMELINE, lambda: self.fetch_timeline(cursor, limit),
        )

    # ── Feed state ──────────────────────────────────────────────────

    async def _fetch_tracked(self, feed: str, fetch) -> PageResult:
        try:
            result = await fetch()
        except ValidationFailed as e:
            if e.code == "INVALID_CURSOR":
                logger.warning("Server rejected cursor for %s; resetting feed", feed)
                self.reset(feed)
            raise
        self._save_state(feed, result)
        return result

    def get_state(self, feed: str) -> FeedState:
        with session_scope(self._session_factory) as db:
            row = db.get(PageState, feed)
            if row is None:
                return FeedState(feed=feed)
            return FeedState(
                feed=feed,
                next_cursor=row.next_cursor,
                has_next_page=row.has_next_page,
                limit_reached=row.limit_reached,
                loaded=True,
            )

    def _save_state(self, feed: str, result: PageResult) -> None:
        with session_scope(self._session_factory) as db:
            row = db.get(PageState, feed)
            if row is None:
                row = PageState(feed=feed)
                db.add(row)
            row.next_cursor = result.next_cursor
            row.has_next_page = result.has_next_page
            row.limit_reached = result.limit_reached

    def reset(self, feed: Optional[str] = None) -> None:
        """Forget the stored cursor for one feed, or for all of them."""
        with session_scope(self._session_factory) as db:
            query = db.query(PageState)
            if feed is not None:
                query = query.filter(PageState.feed == feed)
            query.delete()
        logger.info("Reset pagination state for %s", feed or "all feeds")
