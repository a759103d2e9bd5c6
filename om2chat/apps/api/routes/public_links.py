from __future__ import annotations

import logging
import secrets
import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_active_broker, get_db
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.domain.models import Broker, ClientSession, PublicLink
from om2chat.persistence.repos import client_sessions as sessions_repo
from om2chat.persistence.repos import documents as documents_repo
from om2chat.persistence.repos import public_links as links_repo
from om2chat.services.analytics import EVENT_EMAIL_CAPTURE, EVENT_LINK_VIEW, track_event
from om2chat.services.teams import resolve_owner_broker_id


logger = logging.getLogger(__name__)

router = APIRouter(tags=["public-links"], responses=DEFAULT_ERROR_RESPONSES)


class PublicLinkCreate(BaseModel):
    document_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    requires_email: bool = True
    custom_branding: dict[str, Any] | None = None


class PublicLinkUpdate(BaseModel):
    id: str = Field(min_length=1)
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    is_active: bool | None = None
    requires_email: bool | None = None
    custom_branding: dict[str, Any] | None = None

    @field_validator("title", "is_active", "requires_email")
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        # Omit a field to leave it unchanged; these columns cannot be cleared.
        if value is None:
            raise ValueError("must not be null")
        return value


def _random_suffix() -> str:
    return secrets.token_hex(6)


def new_link_token() -> str:
    return f"doc_{int(time.time() * 1000)}_{_random_suffix()}"


def new_session_token() -> str:
    return f"session_{int(time.time() * 1000)}_{_random_suffix()}"


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "PUBLIC_LINK_NOT_FOUND", "message": "Public link not found or inactive"},
    )


def _serialize_link(link: PublicLink) -> dict[str, Any]:
    return {
        "id": link.id,
        "document_id": link.document_id,
        "broker_id": link.broker_id,
        "link_token": link.link_token,
        "title": link.title,
        "description": link.description,
        "is_active": link.is_active,
        "requires_email": link.requires_email,
        "custom_branding": link.custom_branding or {},
        "created_at": link.created_at.isoformat() if link.created_at else None,
        "updated_at": link.updated_at.isoformat() if link.updated_at else None,
    }


def _serialize_client_session(client_session: ClientSession) -> dict[str, Any]:
    return {
        "id": client_session.id,
        "public_link_id": client_session.public_link_id,
        "session_token": client_session.session_token,
        "client_email": client_session.client_email,
        "client_name": client_session.client_name,
        "client_phone": client_session.client_phone,
        "total_messages": client_session.total_messages,
    }


async def _owned_link(db: AsyncSession, broker: Broker, link_id: str) -> PublicLink:
    owner_id = await resolve_owner_broker_id(db, broker)
    link = await links_repo.get_public_link(db, link_id)
    if link is None or link.broker_id != owner_id:
        raise _not_found()
    return link


@router.post("/public-links", status_code=status.HTTP_201_CREATED)
async def create_public_link(
    payload: PublicLinkCreate,
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # broker_id is never taken from the body; links belong to the paying owner.
    owner_id = await resolve_owner_broker_id(db, broker)
    document = await documents_repo.get_owned_document(db, payload.document_id, owner_id)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "DOCUMENT_NOT_FOUND", "message": "Document not found"},
        )
    try:
        link = await links_repo.create_public_link(
            db,
            document_id=document.id,
            broker_id=owner_id,
            link_token=new_link_token(),
            title=payload.title,
            description=payload.description,
            requires_email=payload.requires_email,
            custom_branding=payload.custom_branding,
        )
        await db.commit()
        await db.refresh(link)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("public_link_create_failed broker_id=%s", broker.id, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "PUBLIC_LINK_CREATE_FAILED", "message": "Failed to create public link"},
        ) from exc

    await track_event(
        event_type=EVENT_LINK_VIEW,
        broker_id=owner_id,
        public_link_id=link.id,
        event_data={"action": "created"},
    )
    return _serialize_link(link)


@router.get("/public-links")
async def list_public_links(
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    owner_id = await resolve_owner_broker_id(db, broker)
    links = await links_repo.list_public_links(db, owner_id)
    return {"publicLinks": [_serialize_link(link) for link in links]}


@router.put("/public-links")
async def update_public_link(
    payload: PublicLinkUpdate,
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    link = await _owned_link(db, broker, payload.id)
    values = payload.model_dump(exclude_unset=True, exclude={"id"})
    await links_repo.update_public_link(db, link.id, **values)
    await db.commit()
    await db.refresh(link)
    return _serialize_link(link)


@router.delete("/public-links")
async def delete_public_link(
    link_id: str = Query(..., alias="id", min_length=1),
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    link = await _owned_link(db, broker, link_id)
    await links_repo.delete_public_link(db, link.id)
    await db.commit()
    return {"success": True}


@router.get("/public-links/{token}")
async def open_public_link(
    token: str,
    request: Request,
    email: str | None = Query(default=None),
    name: str | None = Query(default=None),
    phone: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    link = await links_repo.get_public_link_by_token(db, token)
    if link is None or not link.is_active:
        raise _not_found()
    link_payload = _serialize_link(link)
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")

    await track_event(
        event_type=EVENT_LINK_VIEW,
        broker_id=link.broker_id,
        public_link_id=link.id,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    email = (email or "").strip() or None
    if email is None and link.requires_email:
        # No session means no chat access until the visitor identifies.
        return {"publicLink": link_payload, "clientSession": None}

    try:
        client_session = await sessions_repo.create_client_session(
            db,
            public_link_id=link.id,
            broker_id=link.broker_id,
            session_token=new_session_token(),
            client_email=email,
            client_name=name or None,
            client_phone=phone or None,
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("client_session_create_failed link_id=%s", link_payload["id"], exc_info=exc)
        return {"publicLink": link_payload, "clientSession": None}

    session_payload = _serialize_client_session(client_session)
    if email:
        await track_event(
            event_type=EVENT_EMAIL_CAPTURE,
            broker_id=link_payload["broker_id"],
            public_link_id=link_payload["id"],
            client_session_id=session_payload["id"],
            event_data={"email": email, "name": name, "phone": phone},
            ip_address=ip_address,
            user_agent=user_agent,
        )
    return {"publicLink": link_payload, "clientSession": session_payload}
