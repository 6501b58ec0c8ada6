"""Database configuration and setup for Shelfarr.

Handles SQLite async database setup:
- WAL mode so job polling reads do not block the background writer
- Connection pooling with pool metrics
- Retry logic for database locks
- Session factory shared by routes and background job steps
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy import text as sa_text
from sqlalchemy.exc import OperationalError, PendingRollbackError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel.ext.asyncio.session import AsyncSession as SQLModelAsyncSession

from shelfarr.core.metrics import (
    db_connections_active,
    db_connections_idle,
    db_connections_overflow,
    db_lock_errors_total,
    db_pool_size,
    db_retries_failed_total,
    db_retries_succeeded_total,
    db_retry_attempts_total,
    db_retry_duration_seconds,
)

logger = structlog.get_logger("shelfarr.database")

SessionFactory = async_sessionmaker[SQLModelAsyncSession]


def create_database_engine(
    database_file: Path,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create and configure the database engine for async SQLite.

    Args:
        database_file: Path to the SQLite database file.
        echo: If True, log all SQL statements.
        pool_size: Connections kept in the pool.
        max_overflow: Extra connections allowed beyond ``pool_size``.

    Returns:
        Configured AsyncEngine instance.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{database_file}",
        echo=echo,
        connect_args={"timeout": 30.0},
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )
    db_pool_size.set(pool_size)

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
        cursor = dbapi_conn.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    def _record_pool_state() -> None:
        pool = engine.sync_engine.pool
        checked_out = pool.checkedout()  # type: ignore[attr-defined]
        db_connections_active.set(checked_out)
        db_connections_idle.set(pool.checkedin())  # type: ignore[attr-defined]
        db_connections_overflow.set(max(0, checked_out - pool_size))

    @event.listens_for(engine.sync_engine, "checkout")
    def on_connection_checkout(
        dbapi_conn: Any, connection_record: Any, connection_proxy: Any
    ) -> None:
        _record_pool_state()

    @event.listens_for(engine.sync_engine, "checkin")
    def on_connection_checkin(dbapi_conn: Any, connection_record: Any) -> None:
        _record_pool_state()

    logger.info(
        "Database engine created",
        database_file=str(database_file),
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )
    return engine


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Create a session factory for database sessions.

    expire_on_commit=False keeps loaded rows usable after commit in async code.
    """
    return async_sessionmaker(
        engine,
        class_=SQLModelAsyncSession,
        expire_on_commit=False,
    )


async def retry_db_operation(
    operation: Callable[[], Awaitable[Any]],
    session: SQLModelAsyncSession | None = None,
    max_retries: int = 5,
    retry_delay: float = 0.1,
    operation_type: str = "unknown",
) -> Any:
    """Retry a database operation on SQLite lock errors with exponential backoff.

    Args:
        operation: Callable returning a fresh awaitable on each attempt.
        session: Optional session to roll back between attempts.
        max_retries: Maximum number of attempts.
        retry_delay: Initial delay in seconds, doubled on every retry.
        operation_type: Label for retry metrics ("query", "commit", ...).

    Returns:
        Result of the operation.

    Raises:
        OperationalError: If the operation is not a lock error or keeps failing.
        PendingRollbackError: If the session cannot be rolled back.
    """
    start_time = time.time()

    for attempt in range(max_retries):
        try:
            result = await operation()
            if attempt > 0:
                db_retries_succeeded_total.labels(operation_type=operation_type).inc()
                db_retry_duration_seconds.labels(operation_type=operation_type).observe(
                    time.time() - start_time
                )
            return result
        except OperationalError as exc:
            is_lock = "locked" in str(exc).lower()
            if is_lock and attempt < max_retries - 1:
                db_lock_errors_total.inc()
                db_retry_attempts_total.labels(operation_type=operation_type).inc()
                logger.debug(
                    "Database lock detected, retrying",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    operation_type=operation_type,
                    error=str(exc)[:100],
                )
                if session is not None:
                    await session.rollback()
                await asyncio.sleep(retry_delay * (2**attempt))
                continue

            if attempt > 0:
                db_retry_duration_seconds.labels(operation_type=operation_type).observe(
                    time.time() - start_time
                )
                db_retries_failed_total.labels(operation_type=operation_type).inc()
            logger.error(
                "Database operation failed",
                attempt=attempt + 1,
                max_retries=max_retries,
                operation_type=operation_type,
                error=str(exc)[:200],
            )
            raise
        except PendingRollbackError:
            if session is not None and attempt < max_retries - 1:
                db_retry_attempts_total.labels(operation_type=operation_type).inc()
                logger.debug(
                    "Pending rollback detected, rolling back and retrying",
                    attempt=attempt + 1,
                    operation_type=operation_type,
                )
                await session.rollback()
                await asyncio.sleep(retry_delay * (2**attempt))
                continue

            logger.error(
                "Pending rollback could not be cleared",
                attempt=attempt + 1,
                operation_type=operation_type,
            )
            raise

    raise RuntimeError(f"Operation failed after {max_retries} retries")


async def check_database_schema(engine: AsyncEngine) -> bool:
    """Check whether Alembic migrations are pending, without running them.

    Returns:
        True if migrations are needed, False if up to date or the check was skipped.
    """
    from alembic import script
    from alembic.config import Config

    backend_dir = Path(__file__).resolve().parent.parent.parent
    alembic_ini_path = backend_dir / "alembic.ini"
    script_location = backend_dir / "shelfarr" / "db" / "migrations"

    if not alembic_ini_path.exists() or not script_location.exists():
        logger.debug("Alembic config not found - skipping migration check")
        return False

    alembic_cfg = Config(str(alembic_ini_path))
    alembic_cfg.set_main_option("script_location", str(script_location))
    head_revision = script.ScriptDirectory.from_config(alembic_cfg).get_current_head()
    if head_revision is None:
        return False

    async with engine.connect() as conn:
        result = await conn.execute(
            sa_text("SELECT name FROM sqlite_master WHERE type='table' AND name='alembic_version'")
        )
        if result.fetchone() is None:
            logger.warning(
                "Database migrations are needed: database is not initialized. "
                "Run 'alembic upgrade head' to apply migrations."
            )
            return True

        result = await conn.execute(sa_text("SELECT version_num FROM alembic_version LIMIT 1"))
        row = result.fetchone()
        current_rev = row[0] if row else None

    if current_rev != head_revision:
        logger.warning(
            "Database migrations are needed. Run 'alembic upgrade head' to apply migrations.",
            current=current_rev or "none",
            head=head_revision,
        )
        return True

    logger.debug("Database is up to date", revision=current_rev)
    return False
