import asyncio
import json
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from momentsync.config.settings import Settings
from momentsync.container import build_services
from momentsync.storage.database import init_db, make_engine, make_session_factory
from momentsync.storage.notifier import ChangeNotifier
from momentsync.storage.repository import MomentRepository
from momentsync.sync.schemas import format_timestamp, parse_timestamp

API_BASE = "https://api.test/api/v1"
API_PREFIX = "/api/v1"


# ---------------------------------------------------------------------------
# Fake remote API
# ---------------------------------------------------------------------------


@dataclass
class ServerMoment:
    id: str
    client_id: str
    text: str
    submitted_at: datetime
    tz: str
    time_ago: Optional[int]
    seq: int
    praise: Optional[str] = None
    action: Optional[str] = None
    tags: list = field(default_factory=list)
    is_favorite: bool = False
    is_archived: bool = False

    def to_json(self) -> dict:
        happened = self.submitted_at - timedelta(seconds=self.time_ago or 0)
        return {
            "id": self.id,
            "clientId": self.client_id,
            "text": self.text,
            "submittedAt": format_timestamp(self.submitted_at),
            "happenedAt": format_timestamp(happened),
            "tz": self.tz,
            "timeAgo": self.time_ago,
            "praise": self.praise,
            "action": self.action,
            "tags": self.tags,
            "isFavorite": self.is_favorite,
        }


@dataclass
class Injected:
    status: int = 500
    code: Optional[str] = None
    headers: dict = field(default_factory=dict)
    meta: Optional[dict] = None
    network: bool = False


class FakeMomentsServer:
    """In-memory stand-in for the moments API, served through httpx.MockTransport.

    Creates are NOT deduplicated by clientId, so a client that skips the
    lookup produces duplicates just like a real server would.
    """

    def __init__(self):
        self.moments: dict[str, ServerMoment] = {}
        self.days: list[dict] = []
        self.requests: list[tuple[str, str]] = []
        self.seen_headers: list[httpx.Headers] = []
        self.generations: dict[str, int] = {}
        self.enrich_conflicts: dict[str, int] = {}
        self.default_enrich_conflicts = 0
        self.enrich_on_create = False
        self.lose_create_responses = 0
        self.window_days: Optional[int] = None
        self.now = datetime.now(timezone.utc)
        self._injected: dict[str, list[Injected]] = {}
        self._seq = 0
        self.gate: Optional[asyncio.Event] = None
        self.gated_ops: set[str] = set()
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}

    # ── Test controls ───────────────────────────────────────────────

    def fail(self, op: str, status: int = 500, code: Optional[str] = None,
             times: int = 1, headers: Optional[dict] = None, meta: Optional[dict] = None):
        for _ in range(times):
            self._injected.setdefault(op, []).append(
                Injected(status=status, code=code, headers=headers or {}, meta=meta)
            )

    def fail_network(self, op: str, times: int = 1):
        for _ in range(times):
            self._injected.setdefault(op, []).append(Injected(network=True))

    def seed(self, text: str, submitted_at: datetime, client_id: Optional[str] = None,
             praise: Optional[str] = None, is_favorite: bool = False) -> ServerMoment:
        self._seq += 1
        moment = ServerMoment(
            id=f"srv-{self._seq}",
            client_id=client_id or f"remote-{self._seq}",
            text=text,
            submitted_at=submitted_at,
            tz="UTC",
            time_ago=None,
            seq=self._seq,
            praise=praise,
            action="Keep going" if praise else None,
            tags=["seeded"] if praise else [],
            is_favorite=is_favorite,
        )
        self.moments[moment.id] = moment
        return moment

    def by_client_id(self, client_id: str) -> list[ServerMoment]:
        return [m for m in self.moments.values() if m.client_id == client_id]

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.requests if name == op)

    # ── Transport ───────────────────────────────────────────────────

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        op, args = self._route(request)
        self.requests.append((op, request.url.path))
        self.seen_headers.append(request.headers)

        self.active[op] = self.active.get(op, 0) + 1
        self.max_active[op] = max(self.max_active.get(op, 0), self.active[op])
        try:
            if self.gate is not None and op in self.gated_ops:
                await self.gate.wait()
            await asyncio.sleep(0)

            if op != "health" and "x-user-id" not in request.headers:
                return _error(401, "UNAUTHORIZED", "missing user id")

            injected = self._injected.get(op)
            if injected:
                failure = injected.pop(0)
                if failure.network:
                    raise httpx.ConnectError("connection refused", request=request)
                return _error(failure.status, failure.code, "injected failure",
                              headers=failure.headers, meta=failure.meta)

            return getattr(self, f"_op_{op.replace('-', '_')}")(request, *args)
        finally:
            self.active[op] -= 1

    def _route(self, request: httpx.Request) -> tuple[str, tuple]:
        path = request.url.path
        if path.startswith(API_PREFIX):
            path = path[len(API_PREFIX):]
        parts = [p for p in path.split("/") if p]
        method = request.method
        if parts == ["health"]:
            return "health", ()
        if parts == ["timeline"]:
            return "timeline", ()
        if parts == ["moments"]:
            return ("create" if method == "POST" else "list"), ()
        if len(parts) == 3 and parts[1] == "by-client-id":
            return "lookup", (parts[2],)
        if len(parts) == 3 and parts[2] == "enrich":
            return "enrich", (parts[1],)
        if len(parts) == 3 and parts[2] == "restore":
            return "restore", (parts[1],)
        if len(parts) == 2:
            return {"GET": "get", "PUT": "update", "DELETE": "archive"}[method], (parts[1],)
        raise AssertionError(f"unrouted request {method} {path}")

    # ── Operations ──────────────────────────────────────────────────

    def _op_health(self, request):
        return httpx.Response(200, json={"status": "ok"})

    def _op_create(self, request):
        body = _json(request)
        self._seq += 1
        moment = ServerMoment(
            id=f"srv-{self._seq}",
            client_id=body["clientId"],
            text=body["text"],
            submitted_at=parse_timestamp(body["submittedAt"]),
            tz=body["tz"],
            time_ago=body.get("timeAgo"),
            seq=self._seq,
        )
        self.moments[moment.id] = moment
        self.enrich_conflicts[moment.id] = self.default_enrich_conflicts
        if self.enrich_on_create:
            self._generate(moment)
        if self.lose_create_responses:
            self.lose_create_responses -= 1
            raise httpx.ReadTimeout("response lost", request=request)
        return httpx.Response(201, json={"item": moment.to_json()})

    def _op_lookup(self, request, client_id):
        found = self.by_client_id(client_id)
        if not found:
            return _error(404, "MOMENT_NOT_FOUND", "no moment with that clientId")
        return httpx.Response(200, json={"item": found[0].to_json()})

    def _op_get(self, request, server_id):
        moment = self.moments.get(server_id)
        if moment is None:
            return _error(404, "MOMENT_NOT_FOUND", "not found")
        return httpx.Response(200, json={"item": moment.to_json()})

    def _op_enrich(self, request, server_id):
        moment = self.moments.get(server_id)
        if moment is None:
            return _error(404, "MOMENT_NOT_FOUND", "not found")
        if moment.praise is None:
            if self.enrich_conflicts.get(server_id, 0) > 0:
                self.enrich_conflicts[server_id] -= 1
                return _error(409, "ENRICHMENT_IN_PROGRESS", "praise is being generated")
            self._generate(moment)
        return httpx.Response(200, json={"item": moment.to_json()})

    def _generate(self, moment: ServerMoment) -> None:
        self.generations[moment.id] = self.generations.get(moment.id, 0) + 1
        moment.praise = f"Great job: {moment.text}"
        moment.action = "Keep going"
        moment.tags = ["win", "daily"]

    def _op_update(self, request, server_id):
        moment = self.moments.get(server_id)
        if moment is None:
            return _error(404, "MOMENT_NOT_FOUND", "not found")
        moment.is_favorite = bool(_json(request)["isFavorite"])
        return httpx.Response(200, json={"item": moment.to_json()})

    def _op_archive(self, request, server_id):
        moment = self.moments.get(server_id)
        if moment is None or moment.is_archived:
            return _error(404, "MOMENT_NOT_FOUND", "not found")
        moment.is_archived = True
        return httpx.Response(204)

    def _op_restore(self, request, server_id):
        moment = self.moments.get(server_id)
        if moment is None:
            return _error(404, "MOMENT_NOT_FOUND", "not found")
        moment.is_archived = False
        return httpx.Response(200, json={"item": moment.to_json()})

    def _op_list(self, request):
        params = request.url.params
        limit = int(params.get("limit", 20))
        rows = [m for m in self.moments.values() if not m.is_archived]
        if params.get("isFavorite") == "true":
            rows = [m for m in rows if m.is_favorite]
        rows.sort(key=lambda m: (m.submitted_at, m.seq), reverse=True)

        hidden = False
        if self.window_days is not None:
            boundary = self.now - timedelta(days=self.window_days)
            visible = [m for m in rows if m.submitted_at >= boundary]
            hidden = len(visible) < len(rows)
            rows = visible

        cursor = params.get("cursor")
        if cursor:
            stamp, seq = cursor.rsplit("|", 1)
            key = (parse_timestamp(stamp), int(seq))
            rows = [m for m in rows if (m.submitted_at, m.seq) < key]

        page = rows[:limit]
        has_next = len(rows) > limit
        next_cursor = None
        if has_next:
            last = page[-1]
            next_cursor = f"{last.submitted_at.isoformat()}|{last.seq}"
        return httpx.Response(200, json={
            "data": [m.to_json() for m in page],
            "nextCursor": next_cursor,
            "hasNextPage": has_next,
            "limitReached": hidden and not has_next,
        })

    def _op_timeline(self, request):
        params = request.url.params
        limit = int(params.get("limit", 20))
        offset = int(params.get("cursor") or 0)
        page = self.days[offset:offset + limit]
        has_next = offset + limit < len(self.days)
        # limitReached omitted on purpose: older servers leave it out
        return httpx.Response(200, json={
            "data": page,
            "nextCursor": str(offset + limit) if has_next else None,
            "hasNextPage": has_next,
        })


def _json(request: httpx.Request) -> dict:
    return json.loads(request.content or b"{}")


def _error(status: int, code: Optional[str], message: str,
           headers: Optional[dict] = None, meta: Optional[dict] = None) -> httpx.Response:
    body: dict = {"error": {"code": code or "INTERNAL_SERVER_ERROR", "message": message}}
    if meta:
        body["meta"] = meta
    return httpx.Response(status, json=body, headers=headers or {})


class RecordingSleep:
    """Replaces asyncio.sleep in the engine; records delays, yields once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        api_base_url=API_BASE,
        api_app_token="test-token",
        api_user_id="user-1",
        log_file=None,
        sync_enabled=False,
        sync_max_attempts=3,
        sync_max_concurrency=4,
        praise_poll_interval_seconds=0.0,
        max_praise_polls=5,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture
def fake_server():
    return FakeMomentsServer()


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def repository(notifier):
    """MomentRepository over a fresh in-memory SQLite database."""
    engine = make_engine("sqlite://")
    init_db(engine)
    yield MomentRepository(make_session_factory(engine), notifier)
    engine.dispose()


@pytest_asyncio.fixture
async def services(test_settings, fake_server, sleeps):
    built = build_services(
        test_settings,
        transport=fake_server.transport(),
        sleep=sleeps,
        rng=random.Random(7),
    )
    yield built
    await built.aclose()
