"""Application routes."""

from __future__ import annotations

import structlog
from fastapi import APIRouter

from shelfarr.core.dependencies import get_job_service, get_registry
from shelfarr.routes import general
from shelfarr.routes.metadata_jobs import create_metadata_jobs_router
from shelfarr.routes.sources import create_sources_router

logger = structlog.get_logger("shelfarr.routes")


def create_app_router() -> APIRouter:
    """Create and configure main application router.

    Services are looked up on ``app.state`` per request, so the router can be
    built before the lifespan has created them.

    Returns:
        Configured APIRouter instance
    """
    router = APIRouter()

    router.include_router(general.router, tags=["general"])

    router.include_router(create_sources_router(get_registry))
    logger.debug("Included sources router in app_router")

    router.include_router(create_metadata_jobs_router(get_job_service))
    logger.debug("Included metadata jobs router in app_router")

    return router
