"""Application lifecycle helpers for database access."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from .models import metadata

logger = logging.getLogger(__name__)


async def on_startup(engine: AsyncEngine, *, create_all: bool = False) -> None:
    """Ensure the engine can connect, optionally creating the schema for development."""

    async with engine.begin() as connection:
        if create_all:
            logger.info("Creating database schema (DATABASE_CREATE_ALL enabled)")
            await connection.run_sync(metadata.create_all)
        else:
            await connection.run_sync(lambda _: None)


async def on_shutdown(engine: AsyncEngine) -> None:
    """Dispose the async engine when the application shuts down."""

    await engine.dispose()


__all__ = ["on_startup", "on_shutdown"]
