"""Room Staging API - FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, settings as default_settings
from app.api.v1.health import router as health_router, SERVICE_VERSION
from app.api.v1.router import v1_router, jobs_router_compat
from app.jobs.manager import JobLifecycleManager
from app.services import build_manager
from app.storage.blobs import LocalBlobBackend

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[JobLifecycleManager] = None,
) -> FastAPI:
    """Build the application. Pass ``manager`` to run against prebuilt collaborators."""
    settings = settings or default_settings
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        job_manager = manager or build_manager(settings)

        logger.info("Starting Room Staging API on port %d", settings.port)
        logger.info(
            "Job store: %s, blob backend: %s, max job age: %ds",
            settings.job_store_backend,
            settings.blob_backend,
            settings.max_job_age_seconds,
        )

        await job_manager.start()
        app.state.manager = job_manager
        logger.info("Job manager started")

        yield

        logger.info("Shutting down Room Staging API")
        app.state.manager = None
        await job_manager.stop()
        backend = job_manager.blobs.backend
        if isinstance(backend, LocalBlobBackend):
            removed = backend.cleanup_expired()
            if removed:
                logger.info("Removed %d expired blob directories", removed)

    app = FastAPI(
        title="Room Staging API",
        description="Upload a room photo, stage it with an AI image service, poll for the result",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    # CORS — allow frontend dev servers and any configured origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount routers
    app.include_router(health_router, tags=["health"])  # GET /health, GET / at root
    app.include_router(v1_router)  # All /api/v1/* endpoints
    app.include_router(jobs_router_compat)  # /api/* compat layer
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=default_settings.port)
