"""Alembic environment configuration for async migrations."""

from __future__ import annotations

import asyncio
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

BASE_DIR = Path(__file__).resolve().parents[3]
if str(BASE_DIR) not in sys.path:
    sys.path.append(str(BASE_DIR))

from vmpanel.db.config import get_database_settings  # noqa: E402
from vmpanel.db.models import metadata as target_metadata  # noqa: E402

config = context.config

if config.config_file_name:
    fileConfig(config.config_file_name)


def _get_database_url() -> str:
    if config.get_main_option("sqlalchemy.url"):
        return config.get_main_option("sqlalchemy.url")
    settings = get_database_settings()
    return settings.database_url


def _create_async_engine() -> AsyncEngine:
    settings = get_database_settings()
    return create_async_engine(
        _get_database_url(),
        echo=settings.echo,
        poolclass=NullPool,
    )


def run_migrations_offline() -> None:
    """Emit SQL for the VM panel schema without a live connection."""

    url = _get_database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """Apply VM panel migrations through the async engine."""

    connectable = _create_async_engine()
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
