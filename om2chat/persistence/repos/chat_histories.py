from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.domain.models import ChatMessage


async def add_message(
    session: AsyncSession,
    *,
    document_id: str | None,
    broker_id: str | None,
    role: str,
    content: str,
    client_session_id: str | None = None,
) -> ChatMessage:
    message = ChatMessage(
        id=str(uuid4()),
        document_id=document_id,
        broker_id=broker_id,
        client_session_id=client_session_id,
        role=role,
        content=content,
        # Stamp in Python; database clocks can tie both sides of one exchange.
        created_at=datetime.now(timezone.utc),
    )
    session.add(message)
    return message


async def list_messages_for_sessions(
    session: AsyncSession, client_session_ids: list[str]
) -> dict[str, list[ChatMessage]]:
    """Return each client session's messages, oldest first."""
    grouped: dict[str, list[ChatMessage]] = {session_id: [] for session_id in client_session_ids}
    if not client_session_ids:
        return grouped
    result = await session.execute(
        select(ChatMessage)
        .where(ChatMessage.client_session_id.in_(client_session_ids))
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
    )
    for message in result.scalars().all():
        grouped[message.client_session_id].append(message)
    return grouped
