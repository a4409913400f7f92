"""
Explicit enrichment state for a moment.

  NotEnriched          no praise yet, nothing running
  Enriching            an upload/enrich call is in flight for the moment
  Enriched(...)        praise, action and tags are stored
  EnrichmentFailed(r)  the last attempt ended in a terminal error
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from momentsync.models.moment import Moment, SyncState


@dataclass(frozen=True)
class NotEnriched:
    pass


@dataclass(frozen=True)
class Enriching:
    pass


@dataclass(frozen=True)
class Enriched:
    praise: str
    action: Optional[str] = None
    tags: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EnrichmentFailed:
    reason: str


EnrichmentState = Union[NotEnriched, Enriching, Enriched, EnrichmentFailed]


def enrichment_state(moment: Moment, in_flight: bool = False) -> EnrichmentState:
    if moment.enriched_praise:
        return Enriched(
            praise=moment.enriched_praise,
            action=moment.action,
            tags=tuple(moment.tags or ()),
        )
    if in_flight:
        return Enriching()
    if moment.last_sync_error and moment.sync_error_terminal:
        return EnrichmentFailed(moment.last_sync_error)
    return NotEnriched()


def sync_state(moment: Moment, in_flight: bool = False) -> SyncState:
    if in_flight and not moment.enriched_praise:
        return SyncState.syncing
    return moment.base_sync_state()
