"""Metadata source routes."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from shelfarr.core.sources.models import SourceAvailability
from shelfarr.core.sources.registry import SourceRegistry

logger = structlog.get_logger("shelfarr.routes.sources")


class SourceListResponse(BaseModel):
    """Availability of every known metadata source, in priority order."""

    primary_source: str | None
    sources: list[SourceAvailability]


def create_sources_router(get_registry: Callable[..., SourceRegistry]) -> APIRouter:
    """Create metadata sources router.

    Args:
        get_registry: Dependency returning the source registry

    Returns:
        Configured APIRouter instance
    """
    router = APIRouter(prefix="/api", tags=["sources"])

    @router.get("/sources", response_model=SourceListResponse)
    async def list_sources(registry: SourceRegistry = Depends(get_registry)) -> SourceListResponse:
        """Report which sources are enabled and configured."""
        sources = await registry.availability()
        logger.debug("Source availability requested", sources=[source.source for source in sources])
        return SourceListResponse(primary_source=registry.primary_source, sources=sources)

    return router
