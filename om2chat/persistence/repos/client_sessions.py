from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.domain.models import ClientSession, DocumentMetadata, PublicLink


async def create_client_session(
    session: AsyncSession,
    *,
    public_link_id: str,
    broker_id: str,
    session_token: str,
    client_email: str | None,
    client_name: str | None,
    client_phone: str | None,
) -> ClientSession:
    client_session = ClientSession(
        id=str(uuid4()),
        public_link_id=public_link_id,
        broker_id=broker_id,
        session_token=session_token,
        client_email=client_email,
        client_name=client_name,
        client_phone=client_phone,
        total_messages=0,
    )
    session.add(client_session)
    await session.flush()
    return client_session


async def get_client_session_by_token(
    session: AsyncSession, session_token: str
) -> ClientSession | None:
    result = await session.execute(
        select(ClientSession).where(ClientSession.session_token == session_token)
    )
    return result.scalar_one_or_none()


async def record_activity(
    session: AsyncSession, client_session_id: str, *, messages: int, at: datetime
) -> None:
    # Increment in SQL so concurrent chats on one session do not lose counts.
    await session.execute(
        update(ClientSession)
        .where(ClientSession.id == client_session_id)
        .values(
            total_messages=ClientSession.total_messages + messages,
            last_activity=at,
        )
    )


async def get_client_session(session: AsyncSession, client_session_id: str) -> ClientSession | None:
    result = await session.execute(select(ClientSession).where(ClientSession.id == client_session_id))
    return result.scalar_one_or_none()


async def list_sessions_for_email(
    session: AsyncSession,
    *,
    owner_ids: set[str],
    email: str,
    document_id: str,
) -> list[tuple[ClientSession, PublicLink]]:
    # Emails are matched case-insensitively; visitors type them freely.
    result = await session.execute(
        select(ClientSession, PublicLink)
        .join(PublicLink, PublicLink.id == ClientSession.public_link_id)
        .where(
            func.lower(ClientSession.client_email) == email.strip().lower(),
            PublicLink.document_id == document_id,
            PublicLink.broker_id.in_(owner_ids),
        )
        .order_by(ClientSession.last_activity.desc(), ClientSession.id.asc())
    )
    return [(client_session, link) for client_session, link in result.all()]


async def list_captured_leads(session: AsyncSession, owner_ids: set[str]) -> list[Any]:
    result = await session.execute(
        select(
            ClientSession.client_email,
            ClientSession.client_name,
            ClientSession.first_activity,
            PublicLink.document_id,
            PublicLink.title.label("link_title"),
            DocumentMetadata.title.label("document_title"),
        )
        .join(PublicLink, PublicLink.id == ClientSession.public_link_id)
        .outerjoin(DocumentMetadata, DocumentMetadata.id == PublicLink.document_id)
        .where(PublicLink.broker_id.in_(owner_ids), ClientSession.client_email.is_not(None))
        .order_by(ClientSession.first_activity.desc())
    )
    return list(result.all())
