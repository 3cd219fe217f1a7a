"""SQLAlchemy async engine factory."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from .config import DatabaseSettings, get_database_settings


def build_async_engine(settings: Optional[DatabaseSettings] = None) -> AsyncEngine:
    """Create an async engine.

    In-memory SQLite shares one connection so every session sees the same
    database; file-backed SQLite opens a connection per checkout so concurrent
    sessions keep separate transactions.
    """

    settings = settings or get_database_settings()
    options: Dict[str, Any] = {"echo": settings.echo}
    if settings.is_sqlite:
        options["poolclass"] = StaticPool if settings.is_memory_sqlite else NullPool
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
            pool_pre_ping=True,
        )
    return create_async_engine(settings.database_url, **options)


@lru_cache
def get_async_engine() -> AsyncEngine:
    """Return a cached async SQLAlchemy engine for application use."""

    return build_async_engine()


__all__ = ["build_async_engine", "get_async_engine"]
