"""Repository helpers for VM templates."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...qemu.errors import TemplateExistsError
from ..models import VMTemplate


async def get_template(session: AsyncSession, template_id: int) -> Optional[VMTemplate]:
    return await session.get(VMTemplate, template_id)


async def get_template_by_name(session: AsyncSession, name: str) -> Optional[VMTemplate]:
    stmt = select(VMTemplate).where(VMTemplate.name == name)
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_templates(session: AsyncSession) -> List[VMTemplate]:
    stmt = select(VMTemplate).order_by(VMTemplate.name)
    return list((await session.execute(stmt)).scalars().all())


async def insert_template(session: AsyncSession, fields: Dict[str, Any]) -> VMTemplate:
    if await get_template_by_name(session, fields["name"]) is not None:
        raise TemplateExistsError(fields["name"])
    template = VMTemplate(**fields)
    session.add(template)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise TemplateExistsError(fields["name"]) from exc
    return template


async def update_template_fields(
    session: AsyncSession, template: VMTemplate, changes: Dict[str, Any]
) -> VMTemplate:
    if "name" in changes and changes["name"] != template.name:
        if await get_template_by_name(session, changes["name"]) is not None:
            raise TemplateExistsError(changes["name"])
    for key, value in changes.items():
        setattr(template, key, value)
    await session.commit()
    return template


async def increment_download_count(session: AsyncSession, template_id: int) -> None:
    """Bump the usage counter in SQL so concurrent instantiations never lose an increment."""

    await session.execute(
        update(VMTemplate)
        .where(VMTemplate.id == template_id)
        .values(download_count=VMTemplate.download_count + 1)
    )
    await session.commit()


async def delete_template(session: AsyncSession, template: VMTemplate) -> None:
    await session.delete(template)
    await session.commit()


__all__ = [
    "get_template",
    "get_template_by_name",
    "list_templates",
    "insert_template",
    "update_template_fields",
    "increment_download_count",
    "delete_template",
]
