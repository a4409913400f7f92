"""
FastAPI REST routes for moments.

POST   /api/moments                     — Log a moment (returns at once with offline praise)
GET    /api/moments                     — Local list, newest first (cursor paging)
GET    /api/moments/timeline            — Server day summaries
POST   /api/moments/refresh             — Reload the first server page
POST   /api/moments/load-more           — Next server page
GET    /api/moments/{id}                — One moment
POST   /api/moments/{id}/favorite       — Set or toggle favorite
DELETE /api/moments/{id}                — Archive (undo with /restore)
POST   /api/moments/{id}/restore        — Un-archive
POST   /api/moments/{id}/enrich         — Wait for enriched praise
POST   /api/moments/{id}/retry          — Retry a failed sync
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from momentsync.container import Services
from momentsync.models.moment import Moment
from momentsync.storage.repository import MomentNotFound
from momentsync.sync.errors import RemoteError
from momentsync.sync.pagination import PageResult
from momentsync.sync.state import Enriched, EnrichmentFailed, Enriching, EnrichmentState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/moments", tags=["moments"])


def get_services(request: Request) -> Services:
    return request.app.state.services


# ── Request / Response Models ─────────────────────────────────────────────────

class CreateMomentBody(BaseModel):
    text: str = Field(..., min_length=1)
    submitted_at: Optional[datetime] = None
    timezone: str = "UTC"
    time_ago_seconds: Optional[int] = Field(default=None, ge=0)


class FavoriteBody(BaseModel):
    is_favorite: Optional[bool] = None   # None toggles


class MomentOut(BaseModel):
    client_id: str
    server_id: Optional[str]
    text: str
    submitted_at: str
    happened_at: str
    timezone: str
    time_ago_seconds: Optional[int]
    praise: str
    offline_praise: str
    enriched_praise: Optional[str]
    action: Optional[str]
    tags: list[str]
    is_favorite: bool
    is_archived: bool
    sync_state: str
    enrichment: str
    last_sync_error: Optional[str]
    sync_attempts: int


class MomentPageOut(BaseModel):
    items: list[MomentOut]
    next_cursor: Optional[str]
    has_next_page: bool
    limit_reached: bool


class DaySummaryOut(BaseModel):
    id: str
    date: str
    text: Optional[str]
    tags: list[str]
    moments_count: int
    times_of_day: list[str]
    state: str


class TimelinePageOut(BaseModel):
    items: list[DaySummaryOut]
    next_cursor: Optional[str]
    has_next_page: bool
    limit_reached: bool


class EnrichmentOut(BaseModel):
    client_id: str
    state: str
    praise: Optional[str] = None
    action: Optional[str] = None
    tags: list[str] = []
    reason: Optional[str] = None


class OutcomeOut(BaseModel):
    operation: str
    ok: bool
    attempts: int
    error: Optional[str] = None


# ── Helpers ───────────────────────────────────────────────────────────────────

def enrichment_label(state: EnrichmentState) -> str:
    if isinstance(state, Enriched):
        return "enriched"
    if isinstance(state, Enriching):
        return "enriching"
    if isinstance(state, EnrichmentFailed):
        return "failed"
    return "not_enriched"


def moment_out(services: Services, moment: Moment) -> MomentOut:
    engine = services.sync_engine
    return MomentOut(
        client_id=moment.client_id,
        server_id=moment.server_id,
        text=moment.text,
        submitted_at=moment.submitted_at.isoformat(),
        happened_at=moment.happened_at.isoformat(),
        timezone=moment.timezone,
        time_ago_seconds=moment.time_ago_seconds,
        praise=moment.display_praise,
        offline_praise=moment.offline_praise,
        enriched_praise=moment.enriched_praise,
        action=moment.action,
        tags=list(moment.tags or []),
        is_favorite=moment.is_favorite,
        is_archived=moment.is_archived,
        sync_state=engine.sync_state(moment).value,
        enrichment=enrichment_label(engine.enrichment_state(moment)),
        last_sync_error=moment.last_sync_error,
        sync_attempts=moment.sync_attempts or 0,
    )


def page_out(services: Services, page: PageResult) -> MomentPageOut:
    return MomentPageOut(
        items=[moment_out(services, m) for m in page.items],
        next_cursor=page.next_cursor,
        has_next_page=page.has_next_page,
        limit_reached=page.limit_reached,
    )


def _not_found(e: MomentNotFound) -> HTTPException:
    return HTTPException(404, f"Moment not found: {e.client_id}")


def _upstream(e: RemoteError) -> HTTPException:
    logger.warning("Server request failed: %s", e.describe())
    status = 503 if e.is_retryable else 502
    return HTTPException(status, e.describe())


# ── Moment Endpoints ──────────────────────────────────────────────────────────

@router.post("", response_model=MomentOut, status_code=201)
async def create_moment(body: CreateMomentBody, services: Services = Depends(get_services)):
    try:
        moment = await services.moments.create_moment(
            text=body.text,
            submitted_at=body.submitted_at,
            timezone=body.timezone,
            time_ago_seconds=body.time_ago_seconds,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    return moment_out(services, moment)


@router.get("", response_model=MomentPageOut)
def list_moments(
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    favorites_only: bool = False,
    tag: Optional[str] = None,
    services: Services = Depends(get_services),
):
    if tag:
        moments = services.moments.moments_with_tag(tag)
        if favorites_only:
            moments = [m for m in moments if m.is_favorite]
        return page_out(services, PageResult(items=moments))
    try:
        page = services.moments.list_local(cursor=cursor, limit=limit, favorites_only=favorites_only)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return page_out(services, page)


@router.get("/timeline", response_model=TimelinePageOut)
async def get_timeline(more: bool = False, services: Services = Depends(get_services)):
    try:
        page = await services.moments.load_timeline(more=more)
    except RemoteError as e:
        raise _upstream(e)
    return TimelinePageOut(
        items=[
            DaySummaryOut(
                id=d.id,
                date=d.date,
                text=d.text,
                tags=d.tags,
                moments_count=d.moments_count,
                times_of_day=d.times_of_day,
                state=d.state.value,
            )
            for d in page.items
        ],
        next_cursor=page.next_cursor,
        has_next_page=page.has_next_page,
        limit_reached=page.limit_reached,
    )


@router.post("/refresh", response_model=MomentPageOut)
async def refresh(favorites_only: bool = False, services: Services = Depends(get_services)):
    try:
        page = await services.moments.refresh(favorites_only=favorites_only)
    except RemoteError as e:
        raise _upstream(e)
    return page_out(services, page)


@router.post("/load-more", response_model=MomentPageOut)
async def load_more(favorites_only: bool = False, services: Services = Depends(get_services)):
    try:
        page = await services.moments.load_more(favorites_only=favorites_only)
    except RemoteError as e:
        raise _upstream(e)
    return page_out(services, page)


@router.get("/{client_id}", response_model=MomentOut)
def get_moment(client_id: str, services: Services = Depends(get_services)):
    try:
        return moment_out(services, services.moments.get(client_id))
    except MomentNotFound as e:
        raise _not_found(e)


@router.post("/{client_id}/favorite", response_model=MomentOut)
async def favorite(
    client_id: str,
    body: Optional[FavoriteBody] = None,
    services: Services = Depends(get_services),
):
    try:
        if body is None or body.is_favorite is None:
            moment = services.moments.toggle_favorite(client_id)
        else:
            moment = services.moments.set_favorite(client_id, body.is_favorite)
    except MomentNotFound as e:
        raise _not_found(e)
    return moment_out(services, moment)


@router.delete("/{client_id}", response_model=MomentOut)
async def delete_moment(client_id: str, services: Services = Depends(get_services)):
    try:
        moment = services.moments.delete_moment(client_id)
    except MomentNotFound as e:
        raise _not_found(e)
    return moment_out(services, moment)


@router.post("/{client_id}/restore", response_model=MomentOut)
async def restore_moment(client_id: str, services: Services = Depends(get_services)):
    try:
        moment = services.moments.restore_moment(client_id)
    except MomentNotFound as e:
        raise _not_found(e)
    return moment_out(services, moment)


@router.post("/{client_id}/enrich", response_model=EnrichmentOut)
async def enrich(client_id: str, services: Services = Depends(get_services)):
    try:
        state = await services.moments.wait_for_enrichment(client_id)
    except MomentNotFound as e:
        raise _not_found(e)
    out = EnrichmentOut(client_id=client_id, state=enrichment_label(state))
    if isinstance(state, Enriched):
        out.praise = state.praise
        out.action = state.action
        out.tags = list(state.tags)
    elif isinstance(state, EnrichmentFailed):
        out.reason = state.reason
    return out


@router.post("/{client_id}/retry", response_model=list[OutcomeOut])
async def retry(client_id: str, services: Services = Depends(get_services)):
    try:
        outcomes = await services.moments.retry_sync(client_id)
    except MomentNotFound as e:
        raise _not_found(e)
    return [
        OutcomeOut(operation=o.operation, ok=o.ok, attempts=o.attempts, error=o.error)
        for o in outcomes
    ]
