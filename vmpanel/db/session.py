"""Session factories for async SQLAlchemy usage."""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .engine import get_async_engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@lru_cache
def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the shared async session factory bound to the app engine."""

    return build_session_factory(get_async_engine())


__all__ = ["build_session_factory", "get_async_session_factory"]
