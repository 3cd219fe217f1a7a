"""Database health-check utilities."""

from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


async def ensure_connection(session: AsyncSession) -> None:
    """Run a lightweight query to confirm the database connection is healthy."""

    await session.execute(text("SELECT 1"))


async def database_status(session_factory: async_sessionmaker[AsyncSession]) -> Dict[str, Any]:
    try:
        async with session_factory() as session:
            await ensure_connection(session)
    except SQLAlchemyError as exc:
        logger.warning("Database health check failed: %s", exc)
        return {"ok": False, "error": str(exc)}
    return {"ok": True}


__all__ = ["ensure_connection", "database_status"]
