"""
Rules for applying a server copy of a moment onto the local row.

Responses are applied in arrival order, so every rule compares against
what is stored now:

  server_id   set once; a different incoming id is rejected outright
  enrichment  never regressed from present to absent, never replaced
  favorite    a local change still owed to the server wins
  content     server copy wins when it carries a value
"""

import logging
from datetime import datetime
from typing import Optional

from momentsync.models.moment import Moment, compute_happened_at, normalize_tags
from momentsync.sync.schemas import MomentDTO, parse_timestamp

logger = logging.getLogger(__name__)


class IdentityConflict(Exception):
    """Incoming server copy names a different server_id than the stored one."""

    def __init__(self, client_id: str, stored: str, incoming: str):
        super().__init__(
            f"Moment {client_id} already bound to {stored}, refusing {incoming}"
        )
        self.client_id = client_id
        self.stored = stored
        self.incoming = incoming


def apply_remote(moment: Moment, dto: MomentDTO) -> list[str]:
    """Apply `dto` onto `moment` in place. Returns the names of changed fields."""
    changed: list[str] = []

    def _set(field: str, value) -> None:
        if getattr(moment, field) != value:
            setattr(moment, field, value)
            changed.append(field)

    if dto.id:
        if moment.server_id is None:
            _set("server_id", dto.id)
            if moment.last_sync_error and not moment.sync_error_terminal:
                _set("last_sync_error", None)
        elif moment.server_id != dto.id:
            raise IdentityConflict(moment.client_id, moment.server_id, dto.id)

    # Placeholder copies (e.g. a 409 body) carry no content.
    if dto.text:
        _set("text", dto.text)
    submitted = _parse(dto.submitted_at)
    if submitted is not None:
        _set("submitted_at", submitted)
    happened = _parse(dto.happened_at)
    if happened is None and submitted is not None:
        happened = compute_happened_at(submitted, dto.time_ago)
    if happened is not None:
        _set("happened_at", happened)
    if dto.tz:
        _set("timezone", dto.tz)
    if dto.time_ago is not None:
        _set("time_ago_seconds", dto.time_ago)

    changed.extend(apply_enrichment(moment, dto))

    if dto.is_favorite is not None and not moment.favorite_pending:
        _set("is_favorite", dto.is_favorite)

    return changed


def apply_enrichment(moment: Moment, dto: MomentDTO) -> list[str]:
    """Write praise/action/tags only into a moment that has none yet."""
    if not dto.is_enriched:
        return []
    if moment.enriched_praise:
        if moment.enriched_praise != dto.praise:
            logger.debug(
                "Ignoring differing enrichment for %s; stored copy kept",
                moment.client_id,
            )
        return []
    moment.enriched_praise = dto.praise
    moment.action = dto.action
    moment.tags = normalize_tags(dto.tags)
    return ["enriched_praise", "action", "tags"]


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        logger.warning("Unparseable timestamp from server: %r", value)
        return None
