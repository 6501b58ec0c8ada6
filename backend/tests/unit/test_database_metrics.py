"""Tests for database retry handling."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from shelfarr.core.database import (
    check_database_schema,
    create_database_engine,
    retry_db_operation,
)
from shelfarr.core.metrics import db_pool_size


async def test_engine_records_pool_size(tmp_path: Path) -> None:
    """Test that engine creation records the configured pool size."""
    engine = create_database_engine(tmp_path / "test.db", pool_size=4)
    try:
        assert db_pool_size._value.get() == 4
    finally:
        await engine.dispose()


async def test_engine_uses_wal_journal(tmp_path: Path) -> None:
    """Test that connections are switched to WAL mode."""
    engine = create_database_engine(tmp_path / "test.db")
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("PRAGMA journal_mode"))
            assert result.scalar() == "wal"
    finally:
        await engine.dispose()


async def test_retry_operation_success_first_try() -> None:
    """Test that a successful operation runs exactly once."""
    call_count = 0

    async def successful_operation() -> str:
        nonlocal call_count
        call_count += 1
        return "success"

    result = await retry_db_operation(successful_operation, operation_type="test")

    assert result == "success"
    assert call_count == 1


async def test_retry_operation_retries_lock_errors() -> None:
    """Test that lock errors are retried until the operation succeeds."""
    call_count = 0

    async def failing_operation() -> str:
        nonlocal call_count
        call_count += 1
        if call_count < 2:
            raise OperationalError("statement", "parameters", Exception("database is locked"))
        return "success"

    result = await retry_db_operation(
        failing_operation,
        max_retries=3,
        retry_delay=0.01,
        operation_type="test_lock",
    )

    assert result == "success"
    assert call_count == 2


async def test_retry_operation_gives_up() -> None:
    """Test that a persistent lock error is raised after all retries."""
    call_count = 0

    async def always_failing_operation() -> str:
        nonlocal call_count
        call_count += 1
        raise OperationalError("statement", "parameters", Exception("database is locked"))

    with pytest.raises(OperationalError):
        await retry_db_operation(
            always_failing_operation,
            max_retries=2,
            retry_delay=0.01,
            operation_type="test_failed",
        )
    assert call_count == 2


async def test_retry_operation_does_not_retry_other_errors() -> None:
    """Test that non-lock operational errors are raised immediately."""
    call_count = 0

    async def broken_operation() -> str:
        nonlocal call_count
        call_count += 1
        raise OperationalError("statement", "parameters", Exception("no such table: metadata_jobs"))

    with pytest.raises(OperationalError):
        await retry_db_operation(broken_operation, retry_delay=0.01)
    assert call_count == 1


async def test_schema_check_reports_uninitialized_database(tmp_path: Path) -> None:
    """Test that a database without alembic_version needs migrations."""
    engine = create_database_engine(tmp_path / "test.db")
    try:
        assert await check_database_schema(engine) is True
    finally:
        await engine.dispose()
