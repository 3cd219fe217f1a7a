"""Database utilities and models for the VM panel service."""

from .engine import build_async_engine, get_async_engine
from .session import build_session_factory, get_async_session_factory
from .models.base import Base, metadata

__all__ = [
    "Base",
    "metadata",
    "build_async_engine",
    "get_async_engine",
    "build_session_factory",
    "get_async_session_factory",
]
