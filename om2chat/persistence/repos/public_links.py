from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.domain.models import PublicLink


async def create_public_link(
    session: AsyncSession,
    *,
    document_id: str,
    broker_id: str,
    link_token: str,
    title: str,
    description: str | None,
    requires_email: bool,
    custom_branding: dict[str, Any] | None,
) -> PublicLink:
    link = PublicLink(
        id=str(uuid4()),
        document_id=document_id,
        broker_id=broker_id,
        link_token=link_token,
        title=title,
        description=description,
        is_active=True,
        requires_email=requires_email,
        custom_branding=custom_branding or {},
    )
    session.add(link)
    await session.flush()
    return link


async def get_public_link(session: AsyncSession, link_id: str) -> PublicLink | None:
    result = await session.execute(select(PublicLink).where(PublicLink.id == link_id))
    return result.scalar_one_or_none()


async def get_public_link_by_token(session: AsyncSession, link_token: str) -> PublicLink | None:
    result = await session.execute(select(PublicLink).where(PublicLink.link_token == link_token))
    return result.scalar_one_or_none()


async def list_public_links(session: AsyncSession, broker_id: str) -> list[PublicLink]:
    result = await session.execute(
        select(PublicLink)
        .where(PublicLink.broker_id == broker_id)
        .order_by(PublicLink.created_at.desc(), PublicLink.id)
    )
    return list(result.scalars().all())


async def update_public_link(session: AsyncSession, link_id: str, **values: Any) -> None:
    if not values:
        return
    await session.execute(update(PublicLink).where(PublicLink.id == link_id).values(**values))


async def delete_public_link(session: AsyncSession, link_id: str) -> None:
    await session.execute(delete(PublicLink).where(PublicLink.id == link_id))
