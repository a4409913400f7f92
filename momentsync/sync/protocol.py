"""
Per-moment sync operations — one network exchange each.

Upload:  lookup by clientId → adopt existing server copy, or create
Update:  PUT isFavorite (full-state overwrite, safe to replay)
Enrich:  POST /enrich (server-side idempotent; 409 while generation runs)
Archive: DELETE / restore, whichever is owed

Callers serialize these per client_id; each one reads a fresh snapshot,
does one await, then writes the result in a single repository mutation.
"""

import logging

from momentsync.models.moment import ArchivePending, Moment
from momentsync.storage.merge import IdentityConflict, apply_enrichment, apply_remote
from momentsync.storage.repository import MomentRepository
from momentsync.sync.cloud import MomentsCloudClient
from momentsync.sync.errors import NotFound
from momentsync.sync.schemas import CreateMomentRequest, MomentDTO, format_timestamp

logger = logging.getLogger(__name__)


class SyncProtocol:
    """Handles the individual upload / update / enrich / archive exchanges."""

    def __init__(self, repository: MomentRepository, cloud: MomentsCloudClient):
        self.repository = repository
        self.cloud = cloud

    # ── Upload ───────────────────────────────────────────────────────

    async def upload(self, client_id: str) -> Moment:
        """Make sure the server knows this moment. Never creates a duplicate."""
        moment = self.repository.require(client_id)
        if moment.server_id:
            return moment

        logger.info("Looking up moment by clientId %s", client_id)
        existing = await self.cloud.get_moment_by_client_id(client_id)
        if existing is not None:
            logger.info(
                "Moment %s already on server as %s; adopting", client_id, existing.id,
            )
            return self._adopt(client_id, existing)

        logger.info("Moment %s not found on server, creating", client_id)
        created = await self.cloud.create_moment(build_create_request(moment))
        logger.info("Created moment %s on server with serverId %s", client_id, created.id)
        return self._adopt(client_id, created)

    def _adopt(self, client_id: str, dto: MomentDTO) -> Moment:
        try:
            moment, _ = self.repository.mutate(client_id, lambda m: apply_remote(m, dto))
        except IdentityConflict as e:
            logger.warning("Stale upload response discarded: %s", e)
            moment = self.repository.require(client_id)
        return moment

    # ── Update ───────────────────────────────────────────────────────

    async def push_favorite(self, client_id: str) -> Moment:
        moment = self.repository.require(client_id)
        if not moment.server_id or not moment.favorite_pending:
            return moment

        sent = moment.is_favorite
        await self.cloud.update_moment(moment.server_id, sent)

        def _ack(m: Moment) -> None:
            # A toggle made while the request was in flight stays pending
            if m.is_favorite == sent:
                m.favorite_pending = False

        moment, _ = self.repository.mutate(client_id, _ack)
        logger.info("Favorite=%s synced for %s", sent, client_id)
        return moment

    # ── Enrich ───────────────────────────────────────────────────────

    async def enrich(self, client_id: str) -> Moment:
        """Request enrichment once. Raises EnrichmentInProgress while it runs."""
        moment = self.repository.require(client_id)
        if not moment.server_id or moment.enriched_praise:
            return moment

        server_id = moment.server_id
        logger.info("Requesting enrichment for moment %s", server_id)
        dto = await self.cloud.enrich_moment(server_id)

        def _apply(m: Moment) -> list[str]:
            if m.server_id != server_id:
                return []
            return apply_enrichment(m, dto)

        moment, changed = self.repository.mutate(client_id, _apply)
        if changed:
            logger.info("Moment %s enriched (tags: %s)", server_id, moment.tags)
        else:
            logger.debug("Enrichment requested but not ready yet for %s", server_id)
        return moment

    # ── Archive / restore ────────────────────────────────────────────

    async def push_archive(self, client_id: str) -> Moment:
        moment = self.repository.require(client_id)
        pending = moment.archive_pending
        if not moment.server_id or pending == ArchivePending.none:
            return moment

        if pending == ArchivePending.archive:
            try:
                await self.cloud.archive_moment(moment.server_id)
            except NotFound:
                logger.info("Moment %s already gone on server", moment.server_id)
        else:
            await self.cloud.restore_moment(moment.server_id)

        def _ack(m: Moment) -> None:
            if m.archive_pending == pending:
                m.archive_pending = ArchivePending.none

        moment, _ = self.repository.mutate(client_id, _ack)
        logger.info("Archive state '%s' synced for %s", pending.value, client_id)
        return moment


def build_create_request(moment: Moment) -> CreateMomentRequest:
    return CreateMomentRequest(
        client_id=moment.client_id,
        text=moment.text,
        submitted_at=format_timestamp(moment.submitted_at),
        tz=moment.timezone,
        time_ago=moment.time_ago_seconds,
    )
