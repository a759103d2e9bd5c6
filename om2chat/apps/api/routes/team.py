from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_active_broker, get_db
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.apps.api.routes.auth import set_session_cookie
from om2chat.domain.models import Broker
from om2chat.services import teams as team_service
from om2chat.services.auth.tokens import issue_session_token


router = APIRouter(prefix="/team", tags=["team"], responses=DEFAULT_ERROR_RESPONSES)


class InviteRequest(BaseModel):
    email: EmailStr


class AcceptRequest(BaseModel):
    token: str = Field(min_length=1)
    password: str
    firstName: str = ""
    lastName: str = ""


@router.get("")
async def get_team(
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await team_service.get_team_view(db, broker)


@router.post("/invite")
async def invite(
    payload: InviteRequest,
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    invitation = await team_service.invite_member(db, broker, str(payload.email))
    return {"success": True, "message": "Invitation created", "invitation": invitation}


@router.get("/validate")
async def validate(
    token: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return {"invitation": await team_service.validate_invitation(db, token)}


@router.post("/accept")
async def accept(
    payload: AcceptRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> dict:
    member = await team_service.accept_invitation(
        db,
        token=payload.token,
        password=payload.password,
        first_name=payload.firstName,
        last_name=payload.lastName,
    )
    token = issue_session_token(member)
    set_session_cookie(response, token)
    return {
        "success": True,
        "message": "Team invitation accepted successfully",
        "user": {"id": member.id, "email": member.email},
        "token": token,
    }


@router.delete("")
async def manage_team(
    member_id: str | None = Query(default=None, alias="memberId"),
    invitation_id: str | None = Query(default=None, alias="invitationId"),
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if member_id:
        await team_service.remove_member(db, broker, member_id)
        return {"success": True, "message": "Team member removed successfully"}
    if invitation_id:
        await team_service.cancel_invitation(db, broker, invitation_id)
        return {"success": True, "message": "Invitation cancelled successfully"}
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "INVALID_REQUEST", "message": "Either memberId or invitationId is required"},
    )
