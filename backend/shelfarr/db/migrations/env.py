"""Alembic environment configuration for async SQLModel migrations."""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy import text as sa_text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from shelfarr.db import metadata
from shelfarr.db.models import MetadataJob, MetadataJobLog  # noqa: F401 - registers tables

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = metadata


def get_url() -> str:
    """Database URL from application settings, so migrations hit the app's database."""
    from shelfarr.core.config import get_settings

    settings = get_settings()
    settings.database_dir.mkdir(parents=True, exist_ok=True)
    return settings.database_url


def run_migrations_offline() -> None:
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    # Same pragmas as the application engine
    connection.execute(sa_text("PRAGMA journal_mode=WAL"))
    connection.execute(sa_text("PRAGMA synchronous=NORMAL"))
    connection.execute(sa_text("PRAGMA foreign_keys=ON"))

    context.configure(connection=connection, target_metadata=target_metadata, render_as_batch=True)

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = get_url()

    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.begin() as connection:
        await connection.run_sync(do_run_migrations)
        await connection.commit()

    await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations against a live database.

    Inside a running event loop (app startup) a synchronous SQLite engine is
    used instead of nesting another loop.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(run_async_migrations())
        return

    from sqlalchemy import create_engine

    url = get_url().replace("sqlite+aiosqlite://", "sqlite://", 1)
    engine = create_engine(url, poolclass=pool.NullPool, echo=False)
    try:
        with engine.connect() as connection:
            do_run_migrations(connection)
            connection.commit()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
