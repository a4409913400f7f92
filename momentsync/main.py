"""
momentsync — FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from momentsync.api.routes import router
from momentsync.api.sync_routes import router as sync_router
from momentsync.config.logs import configure_logging
from momentsync.config.settings import settings
from momentsync.container import Services, build_services

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the app; `services` is built from settings at startup when not given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            configure_logging(settings)
        logger.info("momentsync starting...")
        app.state.services = services or build_services(settings)
        active = app.state.services
        if active.settings.sync_enabled:
            await active.sync_engine.start_auto_sync()
        logger.info(
            "API ready at http://%s:%s", active.settings.api_host, active.settings.api_port,
        )
        yield
        logger.info("momentsync shutting down...")
        if owned:
            await active.aclose()
        else:
            await active.sync_engine.stop_auto_sync()
            await active.moments.close()

    app = FastAPI(
        title="momentsync",
        description="Offline-first moment journal with background sync",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.include_router(sync_router)

    @app.get("/health")
    def health():
        return {"status": "ok", "version": "0.1.0"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "momentsync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )
