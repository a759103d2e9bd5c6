from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_active_broker, get_db
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.domain.models import Broker, ChatMessage, ClientSession, PublicLink
from om2chat.persistence.repos import chat_histories as chat_repo
from om2chat.persistence.repos import client_sessions as sessions_repo
from om2chat.services.leads import get_email_analytics
from om2chat.services.teams import visible_owner_ids


router = APIRouter(prefix="/broker", tags=["leads"], responses=DEFAULT_ERROR_RESPONSES)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_message(message: ChatMessage) -> dict:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "created_at": _iso(message.created_at),
    }


def _serialize_session(client_session: ClientSession, link: PublicLink, messages: list[ChatMessage]) -> dict:
    # Session tokens stay private to the client that holds them.
    return {
        "id": client_session.id,
        "public_link_id": client_session.public_link_id,
        "client_email": client_session.client_email,
        "client_name": client_session.client_name,
        "client_phone": client_session.client_phone,
        "first_activity": _iso(client_session.first_activity),
        "last_activity": _iso(client_session.last_activity),
        "total_messages": client_session.total_messages,
        "public_link": {
            "id": link.id,
            "title": link.title,
            "document_id": link.document_id,
            "broker_id": link.broker_id,
        },
        "chat_histories": [_serialize_message(message) for message in messages],
    }


@router.get("/client-sessions/by-email")
async def client_sessions_by_email(
    email: str | None = Query(default=None),
    document_id: str | None = Query(default=None, alias="documentId"),
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if not email or not email.strip() or not document_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_REQUEST", "message": "Email and documentId are required"},
        )
    owner_ids = await visible_owner_ids(db, broker)
    rows = await sessions_repo.list_sessions_for_email(
        db, owner_ids=owner_ids, email=email, document_id=document_id
    )
    messages = await chat_repo.list_messages_for_sessions(db, [client_session.id for client_session, _ in rows])
    return {
        "sessions": [
            _serialize_session(client_session, link, messages[client_session.id])
            for client_session, link in rows
        ]
    }


@router.get("/email-analytics")
async def email_analytics(
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    owner_ids = await visible_owner_ids(db, broker)
    return await get_email_analytics(db, owner_ids)
