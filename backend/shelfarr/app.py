"""Application entry point for Shelfarr."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from shelfarr.core.config import get_settings
from shelfarr.core.database import (
    check_database_schema,
    create_database_engine,
    create_session_factory,
)
from shelfarr.core.jobs import JobProcessor, JobStore, MetadataJobService
from shelfarr.core.logging import setup_logging
from shelfarr.core.metrics import setup_metrics
from shelfarr.core.middleware import TracingMiddleware
from shelfarr.core.routes import create_app_router
from shelfarr.core.sources.registry import build_source_registry, set_source_registry

logger = structlog.get_logger("shelfarr.app")

APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info(
        "Starting Shelfarr application",
        version=APP_VERSION,
        env=settings.env,
        host=settings.host_bind_address,
        port=settings.host_port,
    )

    # Database is already initialized in create_app()
    engine = app.state.engine

    # Check if migrations are needed (but don't run them automatically)
    logger.info("Checking database schema status...")
    if await check_database_schema(engine):
        logger.warning("Database migrations are pending! Please run 'alembic upgrade head' to apply migrations.")
    else:
        logger.info("Database schema is up to date")

    registry = build_source_registry(settings)
    set_source_registry(registry)
    store = JobStore(app.state.async_session_factory, ttl_seconds=settings.job_ttl_hours * 3600)
    processor = JobProcessor(store, registry, settings)
    service = MetadataJobService(store, registry, processor=processor, settings=settings)
    app.state.source_registry = registry
    app.state.job_service = service

    # Restart background steps of jobs interrupted by the last shutdown
    logger.info("Checking for metadata jobs to recover...")
    try:
        recovered = await service.recover_active_jobs()
        if recovered:
            logger.info("Recovered metadata jobs", count=recovered)
    except SQLAlchemyError as e:
        # Don't fail startup if recovery fails (e.g. migrations pending)
        logger.error("Failed to recover metadata jobs", error=str(e), error_type=type(e).__name__)

    scheduler = AsyncIOScheduler()
    app.state.scheduler = scheduler

    async def cleanup_task() -> None:
        try:
            await service.cleanup_expired_jobs()
        except SQLAlchemyError as e:
            logger.error("Expired job cleanup failed", error=str(e), exc_info=True)

    scheduler.add_job(
        cleanup_task,
        trigger=IntervalTrigger(minutes=settings.job_cleanup_interval_minutes),
        id="cleanup_expired_metadata_jobs",
        name="Remove expired metadata jobs",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Scheduler started", cleanup_interval_minutes=settings.job_cleanup_interval_minutes)

    yield

    scheduler.shutdown()
    logger.info("Scheduler shut down")

    await processor.shutdown()
    set_source_registry(None)

    logger.info("Shutting down Shelfarr application")
    if getattr(app.state, "engine", None) is not None:
        await app.state.engine.dispose()
        logger.info("Database engine disposed")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    # Setup logging first (use settings)
    setup_logging(debug=settings.is_debug, logs_dir=settings.logs_dir)

    app = FastAPI(
        title="Shelfarr",
        description="Comic and manga metadata matching and approval",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    database_file = settings.database_dir / "shelfarr.db"
    engine = create_database_engine(database_file, echo=settings.is_debug)
    async_session_factory = create_session_factory(engine)

    app.state.engine = engine
    app.state.async_session_factory = async_session_factory

    logger.info("Database engine and session factory created")

    # Add tracing middleware (before other middleware to capture all requests)
    app.add_middleware(TracingMiddleware)

    # When mounted under a base URL, metrics are set up on the root app in main()
    if not settings.host_base_url:
        setup_metrics(app, APP_VERSION)

    app.include_router(create_app_router())
    return app


def main() -> None:
    """Main entry point."""
    from shelfarr.core.config import reload_settings

    current_settings = reload_settings()
    logger.info(
        "Starting server with settings",
        host=current_settings.host_bind_address,
        port=current_settings.host_port,
        base_url=current_settings.host_base_url or "(empty)",
    )

    app_instance = create_app()

    if current_settings.host_base_url:
        from fastapi.responses import JSONResponse, RedirectResponse

        from shelfarr.core.tracing import get_trace_id

        # Mounted apps do not get lifespan events; run the main app's from the root
        root_app = FastAPI(lifespan=lambda _: lifespan(app_instance))
        root_app.add_middleware(TracingMiddleware)
        setup_metrics(root_app, APP_VERSION)

        @root_app.get("/health")
        async def root_health() -> JSONResponse:
            """Health check endpoint at root level."""
            return JSONResponse({"status": "healthy", "trace_id": get_trace_id()})

        @root_app.get("/")
        async def redirect_to_base():
            """Redirect from root to base_url."""
            return RedirectResponse(url=current_settings.host_base_url.rstrip("/") + "/", status_code=301)

        root_app.mount(current_settings.host_base_url, app_instance)
        app = root_app
        logger.info("Application mounted at base URL", base_url=current_settings.host_base_url)
    else:
        app = app_instance

    import uvicorn

    uvicorn.run(
        app,
        host=current_settings.host_bind_address,
        port=current_settings.host_port,
        log_config=None,  # We use structlog
        reload=False,  # Requires an import string, not an app object
    )


if __name__ == "__main__":
    main()
