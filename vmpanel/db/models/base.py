"""Declarative base, constraint naming and column helpers shared by the panel tables."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Enum as SAEnum
from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

# The Alembic revisions spell these constraint names out; keep both in step.
NAMING_CONVENTION: dict[str, str] = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def portable_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    """Status columns store enum values as VARCHAR on both PostgreSQL and SQLite."""

    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
        native_enum=False,
    )


class Base(DeclarativeBase):
    """Every VM panel table declares its ``__tablename__`` explicitly."""

    metadata = metadata


__all__ = ["Base", "NAMING_CONVENTION", "metadata", "portable_enum", "utcnow"]
