"""General API routes."""

from __future__ import annotations

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from shelfarr.core.tracing import get_trace_id

router = APIRouter(prefix="/api")
logger = structlog.get_logger("shelfarr.routes.general")


@router.get("/health")
async def health() -> JSONResponse:
    """Health check endpoint."""
    trace_id = get_trace_id()
    logger.debug("Health check", trace_id=trace_id)
    return JSONResponse(
        {
            "status": "healthy",
            "trace_id": trace_id,
        }
    )


@router.get("/config")
async def get_config() -> JSONResponse:
    """Get frontend configuration (base_url, etc.)."""
    from shelfarr.core.config import get_settings

    settings = get_settings()
    return JSONResponse(
        {
            "base_url": settings.host_base_url or "",
            "trace_id": get_trace_id(),
        }
    )
