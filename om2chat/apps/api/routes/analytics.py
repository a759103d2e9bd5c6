from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_active_broker, get_db
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.domain.models import ANALYTICS_EVENT_TYPES, Broker
from om2chat.persistence.repos import client_sessions as sessions_repo
from om2chat.persistence.repos import public_links as links_repo
from om2chat.services.analytics import get_summary, track_event
from om2chat.services.teams import resolve_owner_broker_id


router = APIRouter(prefix="/analytics", tags=["analytics"], responses=DEFAULT_ERROR_RESPONSES)


class TrackEventRequest(BaseModel):
    public_link_id: str = Field(min_length=1)
    event_type: str
    client_session_id: str | None = None
    event_data: dict[str, Any] | None = None


@router.get("")
async def analytics_summary(
    public_link_id: str | None = Query(default=None),
    days: int = Query(default=30, ge=1, le=365),
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    owner_id = await resolve_owner_broker_id(db, broker)
    if public_link_id:
        link = await links_repo.get_public_link(db, public_link_id)
        if link is None or link.broker_id != owner_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "PUBLIC_LINK_NOT_FOUND", "message": "Public link not found"},
            )
    return await get_summary(db, broker_id=owner_id, public_link_id=public_link_id, days=days)


@router.post("/track")
async def track(
    payload: TrackEventRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Called from public pages; the owning broker comes from the link, not the body.
    if payload.event_type not in ANALYTICS_EVENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_EVENT_TYPE", "message": "Unknown event type"},
        )
    link = await links_repo.get_public_link(db, payload.public_link_id)
    if link is None or not link.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "PUBLIC_LINK_NOT_FOUND", "message": "Public link not found"},
        )
    client_session_id = None
    if payload.client_session_id:
        client_session = await sessions_repo.get_client_session(db, payload.client_session_id)
        if client_session is not None and client_session.public_link_id == link.id:
            client_session_id = client_session.id
    tracked = await track_event(
        event_type=payload.event_type,
        broker_id=link.broker_id,
        public_link_id=link.id,
        client_session_id=client_session_id,
        event_data=payload.event_data,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return {"success": tracked}
