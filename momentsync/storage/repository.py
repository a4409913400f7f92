"""
Moment repository — the only code that reads or writes the `moments` table.

Read-modify-write on one moment is atomic: `mutate()` holds a lock keyed
by client_id for the whole load → change → commit cycle, so a favorite
toggle and an incoming enrichment never lose each other's update.
Every committed mutation is announced on the ChangeNotifier.

Returned Moment instances are detached snapshots; change them only
through `mutate()`.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import and_, func, inspect, or_
from sqlalchemy.orm import Session, sessionmaker

from momentsync.models.moment import (
    ArchivePending, Moment, compute_happened_at, generate_client_id, utcnow,
)
from momentsync.storage.database import session_scope
from momentsync.storage.merge import IdentityConflict, apply_remote
from momentsync.storage.notifier import ChangeKind, ChangeNotifier, MomentChange
from momentsync.sync.schemas import MomentDTO, parse_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MomentNotFound(LookupError):
    def __init__(self, client_id: str):
        super().__init__(f"Moment not found: {client_id}")
        self.client_id = client_id


class KeyedLock:
    """One threading.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] += 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


class MomentRepository:
    def __init__(self, session_factory: sessionmaker, notifier: Optional[ChangeNotifier] = None):
        self._session_factory = session_factory
        self.notifier = notifier or ChangeNotifier()
        self._keyed = KeyedLock()
        self._insert_lock = threading.Lock()

    # ── Create ──────────────────────────────────────────────────────

    def create(
        self,
        text: str,
        offline_praise: str,
        submitted_at: Optional[datetime] = None,
        timezone: str = "UTC",
        time_ago_seconds: Optional[int] = None,
        client_id: Optional[str] = None,
    ) -> Moment:
        submitted_at = submitted_at or utcnow()
        moment = Moment(
            client_id=client_id or generate_client_id(),
            text=text,
            submitted_at=submitted_at,
            happened_at=compute_happened_at(submitted_at, time_ago_seconds),
            timezone=timezone,
            time_ago_seconds=time_ago_seconds,
            offline_praise=offline_praise,
            tags=[],
        )
        self._insert(moment)
        logger.info("Saved moment with clientId: %s", moment.client_id)
        self.notifier.emit(MomentChange(ChangeKind.CREATED, moment.client_id))
        return moment

    def _insert(self, moment: Moment) -> None:
        with self._insert_lock, session_scope(self._session_factory) as db:
            last_seq = db.query(func.max(Moment.local_seq)).scalar() or 0
            moment.local_seq = last_seq + 1
            db.add(moment)

    # ── Read ────────────────────────────────────────────────────────

    def get(self, client_id: str) -> Optional[Moment]:
        with session_scope(self._session_factory) as db:
            return db.get(Moment, client_id)

    def require(self, client_id: str) -> Moment:
        moment = self.get(client_id)
        if moment is None:
            raise MomentNotFound(client_id)
        return moment

    def get_by_server_id(self, server_id: str) -> Optional[Moment]:
        with session_scope(self._session_factory) as db:
            return db.query(Moment).filter(Moment.server_id == server_id).first()

    def find(self, server_id: Optional[str] = None, client_id: Optional[str] = None) -> Optional[Moment]:
        """Identity lookup: server_id first, then client_id."""
        if server_id:
            found = self.get_by_server_id(server_id)
            if found is not None:
                return found
        if client_id:
            return self.get(client_id)
        return None

    def match_prefix(self, prefix: str) -> list[Moment]:
        """Moments whose client_id starts with `prefix`, archived ones included."""
        with session_scope(self._session_factory) as db:
            return db.query(Moment).filter(Moment.client_id.startswith(prefix)).all()

    def list_moments(
        self,
        include_archived: bool = False,
        favorites_only: bool = False,
        tag: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Moment]:
        """Moments newest first; ties by insertion order, newest insert first."""
        with session_scope(self._session_factory) as db:
            query = self._base_query(db, include_archived, favorites_only)
            moments = query.all()
        if tag:
            moments = [m for m in moments if tag in (m.tags or [])]
        if limit is not None:
            moments = moments[:limit]
        return moments

    def list_page(
        self,
        cursor: Optional[str] = None,
        limit: int = 20,
        favorites_only: bool = False,
    ) -> tuple[list[Moment], Optional[str]]:
        """Keyset page of local moments. Cursor: '<submittedAt>|<local_seq>'."""
        with session_scope(self._session_factory) as db:
            query = self._base_query(db, False, favorites_only)
            if cursor:
                submitted_at, seq = decode_local_cursor(cursor)
                query = query.filter(
                    or_(
                        Moment.submitted_at < submitted_at,
                        and_(Moment.submitted_at == submitted_at, Moment.local_seq < seq),
                    )
                )
            rows = query.limit(limit + 1).all()
        page = rows[:limit]
        next_cursor = encode_local_cursor(page[-1]) if len(rows) > limit else None
        return page, next_cursor

    def fetch_pending_sync(self, include_terminal: bool = False) -> list[Moment]:
        """Moments owing the server an upload, enrichment, favorite or archive change."""
        with session_scope(self._session_factory) as db:
            uploaded = Moment.server_id.isnot(None)
            query = db.query(Moment).filter(
                or_(
                    and_(Moment.server_id.is_(None), Moment.is_archived.is_(False)),
                    and_(uploaded, Moment.enriched_praise.is_(None), Moment.is_archived.is_(False)),
                    and_(uploaded, Moment.favorite_pending.is_(True)),
                    and_(uploaded, Moment.archive_pending != ArchivePending.none),
                )
            )
            if not include_terminal:
                query = query.filter(Moment.sync_error_terminal.is_(False))
            moments = query.order_by(Moment.submitted_at.desc(), Moment.local_seq.desc()).all()
        logger.info("Fetched %d moment(s) pending sync", len(moments))
        return moments

    def count(self, include_archived: bool = False) -> int:
        with session_scope(self._session_factory) as db:
            query = db.query(Moment)
            if not include_archived:
                query = query.filter(Moment.is_archived.is_(False))
            return query.count()

    @staticmethod
    def _base_query(db: Session, include_archived: bool, favorites_only: bool):
        query = db.query(Moment)
        if not include_archived:
            query = query.filter(Moment.is_archived.is_(False))
        if favorites_only:
            query = query.filter(Moment.is_favorite.is_(True))
        return query.order_by(Moment.submitted_at.desc(), Moment.local_seq.desc())

    # ── Mutate ──────────────────────────────────────────────────────

    def mutate(
        self,
        client_id: str,
        change: Callable[[Moment], T],
        kind: ChangeKind = ChangeKind.UPDATED,
    ) -> tuple[Moment, T]:
        """Atomically load, change and commit one moment.

        `change` receives the attached row; raising inside it rolls back.
        Returns the committed snapshot and whatever `change` returned.
        """
        with self._keyed.hold(client_id):
            with session_scope(self._session_factory) as db:
                moment = db.get(Moment, client_id)
                if moment is None:
                    raise MomentNotFound(client_id)
                result = change(moment)
                changed = _changed_fields(moment)
                db.flush()
        if changed:
            self.notifier.emit(MomentChange(kind, client_id, tuple(changed)))
        return moment, result

    def set_favorite(self, client_id: str, is_favorite: bool) -> Moment:
        def _apply(moment: Moment) -> None:
            if moment.is_favorite != is_favorite:
                moment.is_favorite = is_favorite
                moment.favorite_pending = True

        moment, _ = self.mutate(client_id, _apply)
        return moment

    def archive(self, client_id: str) -> Moment:
        def _apply(moment: Moment) -> None:
            if moment.is_archived:
                return
            moment.is_archived = True
            moment.archived_at = utcnow()
            # Undoing a restore that never reached the server cancels it
            if moment.archive_pending == ArchivePending.restore:
                moment.archive_pending = ArchivePending.none
            else:
                moment.archive_pending = ArchivePending.archive

        moment, _ = self.mutate(client_id, _apply, kind=ChangeKind.ARCHIVED)
        logger.info("Archived moment with clientId: %s", client_id)
        return moment

    def restore(self, client_id: str) -> Moment:
        def _apply(moment: Moment) -> None:
            if not moment.is_archived:
                return
            moment.is_archived = False
            moment.archived_at = None
            if moment.archive_pending == ArchivePending.archive:
                moment.archive_pending = ArchivePending.none
            else:
                moment.archive_pending = ArchivePending.restore

        moment, _ = self.mutate(client_id, _apply, kind=ChangeKind.RESTORED)
        logger.info("Restored moment with clientId: %s", client_id)
        return moment

    def merge_remote(self, dto: MomentDTO) -> Optional[Moment]:
        """Insert or update the local copy of a server moment.

        Matches by server_id, then client_id; never creates a duplicate.
        Returns None when the copy conflicts with the stored identity.
        """
        existing = self.find(server_id=dto.id, client_id=dto.client_id)
        if existing is not None:
            try:
                moment, _ = self.mutate(existing.client_id, lambda m: apply_remote(m, dto))
            except IdentityConflict as e:
                logger.warning("Discarding server copy: %s", e)
                return None
            return moment

        with self._insert_lock:
            # Re-check under the insert lock; a concurrent merge may have won.
            existing = self.find(server_id=dto.id, client_id=dto.client_id)
            if existing is None:
                moment = Moment(
                    client_id=dto.client_id or generate_client_id(),
                    offline_praise="",
                    text="",
                    tags=[],
                    is_favorite=False,
                )
                submitted_at = parse_timestamp(dto.submitted_at) if dto.submitted_at else utcnow()
                moment.submitted_at = submitted_at
                moment.happened_at = compute_happened_at(submitted_at, dto.time_ago)
                apply_remote(moment, dto)
                with session_scope(self._session_factory) as db:
                    last_seq = db.query(func.max(Moment.local_seq)).scalar() or 0
                    moment.local_seq = last_seq + 1
                    db.add(moment)
        if existing is not None:
            return self.merge_remote(dto)
        self.notifier.emit(MomentChange(ChangeKind.CREATED, moment.client_id))
        return moment

    # ── Delete ──────────────────────────────────────────────────────

    def purge_archived(self, archived_before: datetime) -> int:
        """Physically delete archived moments with nothing left to tell the server."""
        with session_scope(self._session_factory) as db:
            doomed = (
                db.query(Moment)
                .filter(
                    Moment.is_archived.is_(True),
                    Moment.archived_at < archived_before,
                    or_(
                        Moment.archive_pending == ArchivePending.none,
                        Moment.server_id.is_(None),
                    ),
                )
                .all()
            )
            ids = [m.client_id for m in doomed]
            for moment in doomed:
                db.delete(moment)
        for client_id in ids:
            self.notifier.emit(MomentChange(ChangeKind.DELETED, client_id))
        logger.info("Purged %d archived moment(s)", len(ids))
        return len(ids)

    def delete_all(self) -> int:
        """Wipe the local store (development only)."""
        with session_scope(self._session_factory) as db:
            ids = [row[0] for row in db.query(Moment.client_id).all()]
            db.query(Moment).delete()
        for client_id in ids:
            self.notifier.emit(MomentChange(ChangeKind.DELETED, client_id))
        logger.info("Deleted all %d moments from local database", len(ids))
        return len(ids)


def encode_local_cursor(moment: Moment) -> str:
    return f"{moment.submitted_at.astimezone(timezone.utc).isoformat()}|{moment.local_seq}"


def decode_local_cursor(cursor: str) -> tuple[datetime, int]:
    try:
        stamp, seq = cursor.rsplit("|", 1)
        return parse_timestamp(stamp), int(seq)
    except ValueError as e:
        raise ValueError(f"Invalid cursor: {cursor!r}") from e


def _changed_fields(moment: Moment) -> list[str]:
    insp = inspect(moment)
    changed = []
    for attr in inspect(Moment).column_attrs:
        if insp.attrs[attr.key].history.has_changes():
            changed.append(attr.key)
    return changed
