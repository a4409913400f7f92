"""
Moment service — the operations the app and CLI call.

Local-first: every write lands in the store and returns immediately;
the matching network work runs as a background task tracked per
client_id. Sync failures end up on the moment (last_sync_error), so
none of the local-first calls raise RemoteError.

Server paging (refresh / load_more / load_timeline) is the exception:
it has nothing to return without the server, so RemoteError propagates.
"""

import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from momentsync.config.settings import Settings
from momentsync.models.moment import ArchivePending, Moment, SyncState, utcnow
from momentsync.moments.praise import pick_offline_praise
from momentsync.storage.notifier import MomentChange
from momentsync.storage.repository import MomentRepository
from momentsync.sync.engine import SweepStats, SyncEngine, SyncOutcome
from momentsync.sync.pagination import PageResult, PaginationResolver
from momentsync.sync.schemas import DaySummaryDTO
from momentsync.sync.state import EnrichmentState

logger = logging.getLogger(__name__)


class MomentService:
    def __init__(
        self,
        repository: MomentRepository,
        engine: SyncEngine,
        pagination: PaginationResolver,
        settings: Settings,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.engine = engine
        self.pagination = pagination
        self.settings = settings
        self._rng = rng
        self._tasks: dict[str, set[asyncio.Task]] = {}

    # ── Background tasks ────────────────────────────────────────────

    def _spawn(self, client_id: str, work: Callable[[], Awaitable], label: str) -> asyncio.Task:
        task = asyncio.create_task(work(), name=f"{label}:{client_id}")
        self._tasks.setdefault(client_id, set()).add(task)

        def _done(t: asyncio.Task) -> None:
            tasks = self._tasks.get(client_id)
            if tasks is not None:
                tasks.discard(t)
                if not tasks:
                    del self._tasks[client_id]
            if t.cancelled():
                logger.info("Background %s for %s cancelled", label, client_id)
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Background %s for %s failed", label, client_id, exc_info=exc)

        task.add_done_callback(_done)
        return task

    def pending_tasks(self, client_id: Optional[str] = None) -> list[asyncio.Task]:
        if client_id is not None:
            return list(self._tasks.get(client_id, ()))
        return [t for tasks in self._tasks.values() for t in tasks]

    async def wait_idle(self) -> None:
        """Wait for every background task spawned so far."""
        while True:
            tasks = self.pending_tasks()
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def cancel(self, client_id: str) -> int:
        """Cancel background work for one moment. The stored row is left as is."""
        tasks = self.pending_tasks(client_id)
        for task in tasks:
            task.cancel()
        return len(tasks)

    async def close(self) -> None:
        tasks = self.pending_tasks()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ── Create ──────────────────────────────────────────────────────

    async def create_moment(
        self,
        text: str,
        submitted_at: Optional[datetime] = None,
        timezone: str = "UTC",
        time_ago_seconds: Optional[int] = None,
        sync: bool = True,
    ) -> Moment:
        """Save locally with offline praise; upload and enrichment follow in the background."""
        text = text.strip()
        if not text:
            raise ValueError("Moment text must not be empty")
        if time_ago_seconds is not None and time_ago_seconds < 0:
            raise ValueError("time_ago_seconds must be non-negative")

        moment = self.repository.create(
            text=text,
            offline_praise=pick_offline_praise(self._rng),
            submitted_at=submitted_at,
            timezone=timezone,
            time_ago_seconds=time_ago_seconds,
        )
        if sync:
            self._spawn(moment.client_id, lambda: self._upload_and_enrich(moment.client_id), "create")
        return moment

    async def _upload_and_enrich(self, client_id: str) -> Optional[EnrichmentState]:
        outcome = await self.engine.upload(client_id)
        moment = self.repository.get(client_id)
        if not outcome.ok or moment is None:
            return self.engine.enrichment_state(moment) if moment else None
        return await self.engine.poll_enrichment(client_id)

    # ── Enrichment ──────────────────────────────────────────────────

    def request_enrichment(self, client_id: str) -> Moment:
        """Kick off upload (if needed) and enrichment polling in the background."""
        moment = self.repository.require(client_id)
        if not moment.enriched_praise:
            self._spawn(client_id, lambda: self._upload_and_enrich(client_id), "enrich")
        return moment

    async def wait_for_enrichment(
        self, client_id: str, max_polls: Optional[int] = None,
    ) -> EnrichmentState:
        moment = self.repository.require(client_id)
        if moment.server_id is None:
            outcome = await self.engine.upload(client_id)
            if not outcome.ok:
                return self.engine.enrichment_state(self.repository.require(client_id))
        return await self.engine.poll_enrichment(client_id, max_polls=max_polls)

    def enrichment_state(self, client_id: str) -> EnrichmentState:
        return self.engine.enrichment_state(self.repository.require(client_id))

    def sync_state(self, client_id: str) -> SyncState:
        return self.engine.sync_state(self.repository.require(client_id))

    # ── Read ────────────────────────────────────────────────────────

    def get(self, client_id: str) -> Moment:
        return self.repository.require(client_id)

    def list_local(
        self,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        favorites_only: bool = False,
    ) -> PageResult[Moment]:
        return self.pagination.local_page(cursor, limit, favorites_only)

    def moments_with_tag(self, tag: str) -> list[Moment]:
        return self.repository.list_moments(tag=tag)

    async def refresh(self, favorites_only: bool = False) -> PageResult[Moment]:
        """Reload the first server page; pending uploads are pushed first."""
        if not favorites_only:
            await self.engine.sync_all()
        return await self.pagination.load_first(
            favorites_only=favorites_only, limit=self.settings.refresh_page_size,
        )

    async def load_more(self, favorites_only: bool = False) -> PageResult[Moment]:
        return await self.pagination.load_more(
            favorites_only=favorites_only, limit=self.settings.page_size_default,
        )

    async def load_timeline(self, more: bool = False) -> PageResult[DaySummaryDTO]:
        return await self.pagination.load_timeline(more=more)

    # ── Favorite ────────────────────────────────────────────────────

    def toggle_favorite(self, client_id: str) -> Moment:
        moment = self.repository.require(client_id)
        return self.set_favorite(client_id, not moment.is_favorite)

    def set_favorite(self, client_id: str, is_favorite: bool) -> Moment:
        moment = self.repository.set_favorite(client_id, is_favorite)
        if moment.favorite_pending:
            self._spawn(client_id, lambda: self._propagate_favorite(client_id), "favorite")
        return moment

    async def _propagate_favorite(self, client_id: str) -> None:
        moment = self.repository.get(client_id)
        if moment is None:
            return
        if moment.server_id is None:
            if not (await self.engine.upload(client_id)).ok:
                return
        # A joined in-flight update may have sent the previous value
        for _ in range(2):
            outcome = await self.engine.push_favorite(client_id)
            moment = self.repository.get(client_id)
            if not outcome.ok or moment is None or not moment.favorite_pending:
                return

    # ── Archive ─────────────────────────────────────────────────────

    def delete_moment(self, client_id: str) -> Moment:
        """Archive locally (undo with restore_moment); the server follows."""
        moment = self.repository.archive(client_id)
        self._spawn_archive(moment)
        return moment

    def restore_moment(self, client_id: str) -> Moment:
        moment = self.repository.restore(client_id)
        self._spawn_archive(moment)
        return moment

    def _spawn_archive(self, moment: Moment) -> None:
        # Never-uploaded moments have nothing to tell the server yet
        if moment.server_id is None or moment.archive_pending == ArchivePending.none:
            return
        client_id = moment.client_id
        self._spawn(client_id, lambda: self.engine.push_archive(client_id), "archive")

    # ── Sync ────────────────────────────────────────────────────────

    async def retry_sync(self, client_id: str) -> list[SyncOutcome]:
        """User-triggered retry of a moment whose sync failed."""
        self.repository.require(client_id)
        return await self.engine.retry(client_id)

    async def sync_now(self) -> SweepStats:
        return await self.engine.sync_all()

    # ── Maintenance ─────────────────────────────────────────────────

    def purge(self, retention_days: Optional[int] = None) -> int:
        days = self.settings.archive_retention_days if retention_days is None else retention_days
        return self.repository.purge_archived(utcnow() - timedelta(days=days))

    def delete_all(self) -> int:
        for client_id in list(self._tasks):
            self.cancel(client_id)
        self.pagination.reset()
        return self.repository.delete_all()

    def subscribe(self, callback: Callable[[MomentChange], None]) -> Callable[[], None]:
        return self.repository.notifier.subscribe(callback)
