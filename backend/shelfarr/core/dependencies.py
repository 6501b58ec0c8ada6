"""FastAPI dependencies for the services created at startup."""

from __future__ import annotations

import structlog
from fastapi import HTTPException, Request, status

from shelfarr.core.jobs import MetadataJobService
from shelfarr.core.sources.registry import SourceRegistry

logger = structlog.get_logger("shelfarr.dependencies")


def get_job_service(request: Request) -> MetadataJobService:
    """Metadata job service stored on the app by the lifespan.

    Raises:
        HTTPException: 503 before startup has finished
    """
    service = getattr(request.app.state, "job_service", None)
    if service is None:
        logger.warning("Metadata job service requested before startup", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Metadata jobs are not available yet",
        )
    return service


def get_registry(request: Request) -> SourceRegistry:
    registry = getattr(request.app.state, "source_registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Metadata sources are not available yet",
        )
    return registry
