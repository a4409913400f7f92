"""
High-level sync engine — single-flight scheduling, retries and the sweep.

Per client_id at most one network exchange runs at a time: an identical
request already in flight is joined, a different one waits on the
moment's lock. Different moments sync in parallel, bounded by
settings.sync_max_concurrency during sweeps.

Failures land in the store, never in the caller:
  retryable  backoff and retry up to sync_max_attempts, then last_sync_error
  terminal   last_sync_error + sync_error_terminal, skipped until retry()
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import httpx

from momentsync.config.settings import Settings
from momentsync.models.moment import ArchivePending, Moment, SyncState
from momentsync.storage.repository import MomentNotFound, MomentRepository
from momentsync.sync.backoff import Backoff
from momentsync.sync.cloud import MomentsCloudClient
from momentsync.sync.errors import (
    EnrichmentInProgress, FailureKind, RemoteError, from_transport,
)
from momentsync.sync.protocol import SyncProtocol
from momentsync.sync.state import (
    Enriched, EnrichmentFailed, EnrichmentState, NotEnriched,
    enrichment_state, sync_state,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class SyncOutcome:
    client_id: str
    operation: str
    ok: bool
    attempts: int = 0
    error: Optional[str] = None
    kind: Optional[FailureKind] = None
    in_progress: bool = False

    @property
    def terminal(self) -> bool:
        return self.kind in (FailureKind.TERMINAL, FailureKind.NOT_FOUND)


@dataclass
class SweepStats:
    moments: int = 0
    uploaded: int = 0
    enriched: int = 0
    updated: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "moments": self.moments,
            "uploaded": self.uploaded,
            "enriched": self.enriched,
            "updated": self.updated,
            "failed": self.failed,
        }


class SyncEngine:
    """Moves local moments to the server and completes their enrichment."""

    def __init__(
        self,
        repository: MomentRepository,
        cloud: MomentsCloudClient,
        settings: Settings,
        sleep: Optional[Sleep] = None,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.cloud = cloud
        self.settings = settings
        self.protocol = SyncProtocol(repository, cloud)
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}
        self._active: dict[str, int] = {}
        self._sweep_lock = asyncio.Lock()
        self._auto_sync_task: Optional[asyncio.Task] = None
        self._online = True
        self._last_sweep: Optional[SweepStats] = None

    # ── State ───────────────────────────────────────────────────────

    def is_syncing(self, client_id: str) -> bool:
        return self._active.get(client_id, 0) > 0

    def sync_state(self, moment: Moment) -> SyncState:
        return sync_state(moment, self.is_syncing(moment.client_id))

    def enrichment_state(self, moment: Moment) -> EnrichmentState:
        return enrichment_state(moment, self.is_syncing(moment.client_id))

    # ── Single-flight ───────────────────────────────────────────────

    async def _single_flight(
        self,
        client_id: str,
        operation: str,
        factory: Callable[[], Awaitable],
        exclusive: bool = True,
    ):
        """Join an identical in-flight call, else run `factory` (under the moment's lock)."""
        key = (client_id, operation)
        running = self._inflight.get(key)
        if running is not None:
            logger.debug("Joining in-flight %s for %s", operation, client_id)
            try:
                return await asyncio.shield(running)
            except asyncio.CancelledError:
                if not running.cancelled() or asyncio.current_task().cancelling():
                    raise
            # The owner cancelled the shared call; this caller still wants it
            logger.info("In-flight %s for %s was cancelled by its owner; running it again",
                        operation, client_id)
            if self._inflight.get(key) is running:
                del self._inflight[key]
            return await self._single_flight(client_id, operation, factory, exclusive)

        task = asyncio.ensure_future(self._run(client_id, factory, exclusive))
        self._inflight[key] = task

        def _forget(done: asyncio.Future) -> None:
            if self._inflight.get(key) is done:
                del self._inflight[key]

        task.add_done_callback(_forget)
        return await task

    async def _run(self, client_id: str, factory: Callable[[], Awaitable], exclusive: bool):
        self._active[client_id] = self._active.get(client_id, 0) + 1
        try:
            if not exclusive:
                return await factory()
            lock = self._locks.setdefault(client_id, asyncio.Lock())
            self._lock_users[client_id] = self._lock_users.get(client_id, 0) + 1
            try:
                async with lock:
                    return await factory()
            finally:
                self._lock_users[client_id] -= 1
                if not self._lock_users[client_id]:
                    del self._lock_users[client_id]
                    del self._locks[client_id]
        finally:
            self._active[client_id] -= 1
            if not self._active[client_id]:
                del self._active[client_id]

    # ── Retry ───────────────────────────────────────────────────────

    def _backoff(self) -> Backoff:
        return Backoff(
            base=self.settings.sync_backoff_base_seconds,
            cap=self.settings.sync_backoff_cap_seconds,
            jitter=self.settings.sync_backoff_jitter,
            rng=self._rng,
        )

    async def _with_retry(
        self,
        client_id: str,
        operation: str,
        call: Callable[[], Awaitable],
        max_attempts: Optional[int] = None,
    ) -> SyncOutcome:
        max_attempts = max_attempts or self.settings.sync_max_attempts
        backoff = self._backoff()
        attempt = 0
        while True:
            attempt += 1
            try:
                await call()
            except MomentNotFound:
                logger.info("Moment %s vanished locally, dropping %s", client_id, operation)
                return SyncOutcome(client_id, operation, ok=False, attempts=attempt,
                                   error="moment deleted locally", kind=FailureKind.NOT_FOUND)
            except (RemoteError, httpx.HTTPError) as exc:
                error = exc if isinstance(exc, RemoteError) else from_transport(exc)
                if error.is_retryable and attempt < max_attempts:
                    delay = backoff.next_delay(error.retry_after)
                    logger.warning(
                        "%s failed for %s (attempt %d/%d, %s); retrying in %.2fs",
                        operation, client_id, attempt, max_attempts, error.describe(), delay,
                    )
                    await self._sleep(delay)
                    continue
                return self._record_failure(client_id, operation, error, attempt)
            else:
                self._record_success(client_id)
                return SyncOutcome(client_id, operation, ok=True, attempts=attempt)

    def _record_success(self, client_id: str) -> None:
        def _clear(m: Moment) -> None:
            if m.last_sync_error is not None:
                m.last_sync_error = None
            if m.sync_error_terminal:
                m.sync_error_terminal = False
            if m.sync_attempts:
                m.sync_attempts = 0

        try:
            self.repository.mutate(client_id, _clear)
        except MomentNotFound:
            pass

    def _record_failure(
        self, client_id: str, operation: str, error: RemoteError, attempts: int,
    ) -> SyncOutcome:
        outcome = SyncOutcome(
            client_id, operation, ok=False, attempts=attempts,
            error=error.describe(), kind=error.kind,
        )
        if isinstance(error, EnrichmentInProgress):
            # Still generating on the server; not a failure.
            logger.info("Enrichment still in progress for %s; will check again later", client_id)
            outcome.in_progress = True
            return outcome

        terminal = not error.is_retryable

        def _fail(m: Moment) -> None:
            m.last_sync_error = error.describe()
            m.sync_error_terminal = terminal
            m.sync_attempts = (m.sync_attempts or 0) + attempts

        try:
            self.repository.mutate(client_id, _fail)
        except MomentNotFound:
            return outcome
        if terminal:
            logger.error("%s for %s failed terminally: %s", operation, client_id, error.describe())
        else:
            logger.warning("%s for %s gave up after %d attempts: %s",
                           operation, client_id, attempts, error.describe())
        return outcome

    # ── Operations ──────────────────────────────────────────────────

    async def upload(self, client_id: str, max_attempts: Optional[int] = None) -> SyncOutcome:
        return await self._single_flight(
            client_id, "upload",
            lambda: self._with_retry(client_id, "upload",
                                     lambda: self.protocol.upload(client_id), max_attempts),
        )

    async def push_favorite(self, client_id: str, max_attempts: Optional[int] = None) -> SyncOutcome:
        return await self._single_flight(
            client_id, "update",
            lambda: self._with_retry(client_id, "update",
                                     lambda: self.protocol.push_favorite(client_id), max_attempts),
        )

    async def push_archive(self, client_id: str, max_attempts: Optional[int] = None) -> SyncOutcome:
        return await self._single_flight(
            client_id, "archive",
            lambda: self._with_retry(client_id, "archive",
                                     lambda: self.protocol.push_archive(client_id), max_attempts),
        )

    async def enrich(self, client_id: str, max_attempts: Optional[int] = None) -> SyncOutcome:
        return await self._single_flight(
            client_id, "enrich",
            lambda: self._with_retry(client_id, "enrich",
                                     lambda: self.protocol.enrich(client_id), max_attempts),
        )

    async def sync_moment(self, client_id: str) -> list[SyncOutcome]:
        """Bring one moment fully up to date: upload, favorite, archive, enrich."""
        return await self._single_flight(
            client_id, "sync", lambda: self._sync_moment(client_id), exclusive=False,
        )

    async def _sync_moment(self, client_id: str) -> list[SyncOutcome]:
        outcomes: list[SyncOutcome] = []
        moment = self.repository.get(client_id)
        if moment is None:
            return outcomes

        if moment.server_id is None:
            if moment.is_archived:
                return outcomes
            outcome = await self.upload(client_id)
            outcomes.append(outcome)
            if not outcome.ok:
                return outcomes
            moment = self.repository.get(client_id)
            if moment is None:
                return outcomes

        if moment.favorite_pending:
            outcomes.append(await self.push_favorite(client_id))
        if moment.archive_pending != ArchivePending.none:
            outcomes.append(await self.push_archive(client_id))

        moment = self.repository.get(client_id)
        if moment is not None and moment.needs_enrichment and not moment.is_archived:
            outcomes.append(await self.enrich(client_id))
        return outcomes

    async def poll_enrichment(
        self,
        client_id: str,
        max_polls: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> EnrichmentState:
        """Poll the enrich endpoint at a fixed interval until praise arrives.

        Stops early on a terminal error. Leaves the moment NotEnriched when
        polls run out; the next sweep picks it up again.
        """
        max_polls = max_polls or self.settings.max_praise_polls
        interval = self.settings.praise_poll_interval_seconds if interval is None else interval

        for poll in range(1, max_polls + 1):
            moment = self.repository.get(client_id)
            if moment is None:
                return NotEnriched()
            if moment.enriched_praise:
                return self.enrichment_state(moment)
            if moment.server_id is None:
                return NotEnriched()

            outcome = await self.enrich(client_id, max_attempts=1)
            moment = self.repository.get(client_id)
            if moment is not None and moment.enriched_praise:
                return self.enrichment_state(moment)
            if outcome.terminal:
                return EnrichmentFailed(outcome.error or "enrichment failed")

            logger.debug("Poll %d/%d: no praise yet for %s", poll, max_polls, client_id)
            if poll < max_polls:
                await self._sleep(interval)

        moment = self.repository.get(client_id)
        return self.enrichment_state(moment) if moment is not None else NotEnriched()

    async def retry(self, client_id: str) -> list[SyncOutcome]:
        """User-triggered retry: forget the stored failure and sync again."""
        def _clear(m: Moment) -> None:
            m.last_sync_error = None
            m.sync_error_terminal = False
            m.sync_attempts = 0

        self.repository.mutate(client_id, _clear)
        return await self.sync_moment(client_id)

    # ── Sweep ───────────────────────────────────────────────────────

    async def sync_all(self) -> SweepStats:
        """Sync every moment that owes the server something."""
        async with self._sweep_lock:
            pending = self.repository.fetch_pending_sync()
            stats = SweepStats(moments=len(pending))
            if not pending:
                self._last_sweep = stats
                return stats

            logger.info("Found %d moment(s) to sync", len(pending))
            semaphore = asyncio.Semaphore(max(1, self.settings.sync_max_concurrency))

            async def _worker(client_id: str) -> list[SyncOutcome]:
                async with semaphore:
                    return await self.sync_moment(client_id)

            results = await asyncio.gather(
                *(_worker(m.client_id) for m in pending), return_exceptions=True,
            )

            for moment, result in zip(pending, results):
                if isinstance(result, asyncio.CancelledError):
                    if asyncio.current_task().cancelling():
                        raise result
                    logger.warning("Sync of %s was cancelled; skipping it this sweep", moment.client_id)
                    stats.failed += 1
                    stats.errors[moment.client_id] = "cancelled"
                    continue
                if isinstance(result, BaseException):
                    logger.error("Sync of %s crashed", moment.client_id, exc_info=result)
                    stats.failed += 1
                    stats.errors[moment.client_id] = repr(result)
                    continue
                self._tally(stats, result)

            logger.info(
                "Sweep complete: %d moments, %d uploaded, %d enriched, %d updated, %d failed",
                stats.moments, stats.uploaded, stats.enriched, stats.updated, stats.failed,
            )
            self._last_sweep = stats
            return stats

    def _tally(self, stats: SweepStats, outcomes: list[SyncOutcome]) -> None:
        failed = False
        for outcome in outcomes:
            if not outcome.ok:
                if not outcome.in_progress:
                    failed = True
                    stats.errors[outcome.client_id] = outcome.error or "unknown error"
                continue
            if outcome.operation == "upload":
                stats.uploaded += 1
            elif outcome.operation == "enrich":
                moment = self.repository.get(outcome.client_id)
                if moment is not None and isinstance(self.enrichment_state(moment), Enriched):
                    stats.enriched += 1
            else:
                stats.updated += 1
        if failed:
            stats.failed += 1

    # ── Auto-Sync Loop ──────────────────────────────────────────────

    async def start_auto_sync(self) -> None:
        """Start the background auto-sync loop."""
        if self._auto_sync_task and not self._auto_sync_task.done():
            return
        self._auto_sync_task = asyncio.create_task(self._auto_sync_loop())
        logger.info("Auto-sync started (interval: %ss)", self.settings.sync_interval_seconds)

    async def stop_auto_sync(self) -> None:
        """Stop the background auto-sync loop."""
        if self._auto_sync_task:
            self._auto_sync_task.cancel()
            try:
                await self._auto_sync_task
            except asyncio.CancelledError:
                pass
            self._auto_sync_task = None
            logger.info("Auto-sync stopped")

    async def _auto_sync_loop(self) -> None:
        while True:
            try:
                if self._online:
                    await self.sync_all()
                await self._sleep(self.settings.sync_interval_seconds)
            except asyncio.CancelledError:
                if asyncio.current_task().cancelling():
                    break
                logger.warning("Auto-sync sweep interrupted by a cancelled moment task")
                await self._sleep(self.settings.sync_interval_seconds)
            except Exception:
                logger.exception("Auto-sync error")
                await self._sleep(self.settings.sync_interval_seconds)

    # ── Connectivity ────────────────────────────────────────────────

    async def set_online(self, online: bool) -> Optional[SweepStats]:
        """Update connectivity state. Triggers a sweep on reconnect."""
        was_offline = not self._online
        self._online = online
        if online and was_offline:
            logger.info("Back online — triggering sync")
            try:
                return await self.sync_all()
            except Exception:
                logger.exception("Sync on reconnect failed")
        return None

    # ── Status ──────────────────────────────────────────────────────

    def status(self) -> dict:
        return {
            "online": self._online,
            "auto_sync_running": (
                self._auto_sync_task is not None
                and not self._auto_sync_task.done()
            ),
            "sync_interval_seconds": self.settings.sync_interval_seconds,
            "in_flight": sorted(self._active),
            "pending": len(self.repository.fetch_pending_sync(include_terminal=True)),
            "last_sweep": self._last_sweep.as_dict() if self._last_sweep else None,
        }
