"""
Sync API routes.

POST   /api/sync            — Run a sweep now
GET    /api/sync/status     — Sync engine status
POST   /api/sync/online     — Report connectivity (reconnect triggers a sweep)
POST   /api/sync/purge      — Drop archived moments past retention
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from momentsync.api.routes import get_services
from momentsync.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


# ── Request/Response Models ─────────────────────────────────────────────

class SweepResponse(BaseModel):
    moments: int
    uploaded: int
    enriched: int
    updated: int
    failed: int
    errors: dict[str, str] = {}


class StatusResponse(BaseModel):
    online: bool
    auto_sync_running: bool
    sync_interval_seconds: float
    in_flight: list[str]
    pending: int
    last_sweep: Optional[dict] = None


class OnlineRequest(BaseModel):
    online: bool


class OnlineResponse(BaseModel):
    online: bool
    sweep: Optional[SweepResponse] = None


class PurgeResponse(BaseModel):
    purged: int


# ── Routes ──────────────────────────────────────────────────────────────

@router.post("", response_model=SweepResponse)
async def trigger_sync(services: Services = Depends(get_services)):
    """Push every pending upload, favorite, archive and enrichment."""
    stats = await services.moments.sync_now()
    return SweepResponse(**stats.as_dict(), errors=stats.errors)


@router.get("/status", response_model=StatusResponse)
def get_status(services: Services = Depends(get_services)):
    return StatusResponse(**services.sync_engine.status())


@router.post("/online", response_model=OnlineResponse)
async def set_online(req: OnlineRequest, services: Services = Depends(get_services)):
    stats = await services.sync_engine.set_online(req.online)
    sweep = SweepResponse(**stats.as_dict(), errors=stats.errors) if stats else None
    return OnlineResponse(online=req.online, sweep=sweep)


@router.post("/purge", response_model=PurgeResponse)
def purge(retention_days: Optional[int] = None, services: Services = Depends(get_services)):
    return PurgeResponse(purged=services.moments.purge(retention_days))
