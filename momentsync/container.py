"""
Wiring for the moment services.

Entry points (API lifespan, CLI) build one Services bundle from a
Settings instance; nothing below this module reads a global.
"""

import logging
import random
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from momentsync.config.settings import Settings
from momentsync.moments.service import MomentService
from momentsync.storage.database import init_db, make_engine, make_session_factory
from momentsync.storage.notifier import ChangeNotifier
from momentsync.storage.repository import MomentRepository
from momentsync.sync.cloud import MomentsCloudClient
from momentsync.sync.engine import Sleep, SyncEngine
from momentsync.sync.pagination import PaginationResolver

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db_engine: Engine
    session_factory: sessionmaker
    notifier: ChangeNotifier
    repository: MomentRepository
    cloud: MomentsCloudClient
    sync_engine: SyncEngine
    pagination: PaginationResolver
    moments: MomentService

    async def aclose(self) -> None:
        await self.sync_engine.stop_auto_sync()
        await self.moments.close()
        await self.cloud.aclose()
        self.db_engine.dispose()


def build_services(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Optional[Sleep] = None,
    rng: Optional[random.Random] = None,
) -> Services:
    """Create the database, clients and services for one process."""
    db_engine = make_engine(settings.database_url)
    init_db(db_engine)
    session_factory = make_session_factory(db_engine)

    notifier = ChangeNotifier()
    repository = MomentRepository(session_factory, notifier)
    cloud = MomentsCloudClient(settings, transport=transport)
    sync_engine = SyncEngine(repository, cloud, settings, sleep=sleep, rng=rng)
    pagination = PaginationResolver(repository, cloud, session_factory, settings)
    moments = MomentService(repository, sync_engine, pagination, settings, rng=rng)

    logger.info("Services ready (database: %s, api: %s)", settings.database_url, settings.api_base_url)
    return Services(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        notifier=notifier,
        repository=repository,
        cloud=cloud,
        sync_engine=sync_engine,
        pagination=pagination,
        moments=moments,
    )
