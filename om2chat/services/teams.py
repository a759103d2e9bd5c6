from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.domain.models import Broker, Team, TeamInvitation
from om2chat.persistence.repos import brokers as brokers_repo
from om2chat.persistence.repos import teams as teams_repo
from om2chat.services.auth.passwords import MIN_PASSWORD_LENGTH, hash_password
from om2chat.services.entitlements import as_utc


logger = logging.getLogger(__name__)


async def resolve_owner_broker_id(session: AsyncSession, broker: Broker) -> str:
    # Team members act on behalf of the admin who pays for the team.
    if not broker.team_id or broker.is_team_admin:
        return broker.id
    team = await teams_repo.get_team(session, broker.team_id)
    if team is None:
        return broker.id
    return team.admin_broker_id


async def visible_owner_ids(session: AsyncSession, broker: Broker) -> set[str]:
    owner_id = await resolve_owner_broker_id(session, broker)
    return {owner_id, broker.id}


INVITATION_TTL_DAYS = 7


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _team_error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


async def get_team_view(session: AsyncSession, broker: Broker) -> dict[str, Any]:
    """Team, members and pending invitations as seen by ``broker``."""
    team = await teams_repo.get_team_for_admin(session, broker.id)
    if team is None and broker.team_id:
        team = await teams_repo.get_team(session, broker.team_id)
    if team is None:
        if broker.subscription_tier != "team":
            raise _team_error(status.HTTP_403_FORBIDDEN, "TEAM_SUBSCRIPTION_REQUIRED", "Team subscription required")
        return {"team": None, "members": [], "invitations": [], "isTeamAdmin": False}
    is_admin = team.admin_broker_id == broker.id
    members = await teams_repo.list_members(session, team.id)
    invitations = await teams_repo.list_pending_invitations(session, team.id)
    return {
        "team": {"id": team.id, "name": team.name, "admin_broker_id": team.admin_broker_id},
        "members": [
            {
                "id": member.id,
                "email": member.email,
                "first_name": member.first_name,
                "last_name": member.last_name,
                "is_team_admin": member.is_team_admin,
            }
            for member in members
        ],
        "invitations": [_serialize_invitation(invitation) for invitation in invitations],
        "isTeamAdmin": is_admin,
    }


def _serialize_invitation(invitation: TeamInvitation, *, include_token: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": invitation.id,
        "team_id": invitation.team_id,
        "email": invitation.email,
        "status": invitation.status,
        "expires_at": as_utc(invitation.expires_at).isoformat() if invitation.expires_at else None,
    }
    if include_token:
        payload["token"] = invitation.token
    return payload


async def _admin_team(session: AsyncSession, broker: Broker, *, create: bool) -> Team:
    if broker.team_id and not broker.is_team_admin:
        raise _team_error(status.HTTP_403_FORBIDDEN, "TEAM_ADMIN_REQUIRED", "Only the team admin can manage the team")
    team = await teams_repo.get_team_for_admin(session, broker.id)
    if team is not None:
        return team
    if broker.subscription_tier != "team":
        raise _team_error(status.HTTP_403_FORBIDDEN, "TEAM_SUBSCRIPTION_REQUIRED", "Team subscription required")
    if not create:
        raise _team_error(status.HTTP_404_NOT_FOUND, "TEAM_NOT_FOUND", "Team not found")
    name = broker.company_name or f"{broker.first_name or 'Team'}'s Team"
    return await teams_repo.create_team(session, name=name, admin_broker_id=broker.id)


async def invite_member(session: AsyncSession, broker: Broker, email: str) -> dict[str, Any]:
    """Create a pending invitation; the token is returned to the admin to share."""
    team = await _admin_team(session, broker, create=True)
    normalized = brokers_repo.normalize_email(email)
    existing = await brokers_repo.get_broker_by_email(session, normalized)
    if existing is not None:
        raise _team_error(status.HTTP_409_CONFLICT, "ACCOUNT_EXISTS", "An account with this email already exists")
    if await teams_repo.get_pending_invitation(session, team_id=team.id, email=normalized) is not None:
        raise _team_error(status.HTTP_409_CONFLICT, "INVITATION_EXISTS", "An invitation is already pending for this email")
    invitation = await teams_repo.create_invitation(
        session,
        team_id=team.id,
        admin_broker_id=broker.id,
        email=normalized,
        token=secrets.token_urlsafe(32),
        expires_at=_utc_now() + timedelta(days=INVITATION_TTL_DAYS),
    )
    await session.commit()
    logger.info("team_invitation_created team_id=%s invitation_id=%s", team.id, invitation.id)
    return _serialize_invitation(invitation, include_token=True)


async def _usable_invitation(session: AsyncSession, token: str) -> TeamInvitation:
    invitation = await teams_repo.get_invitation_by_token(session, token)
    expires_at = as_utc(invitation.expires_at) if invitation else None
    if invitation is None or invitation.status != "pending" or expires_at is None or expires_at <= _utc_now():
        raise _team_error(status.HTTP_400_BAD_REQUEST, "INVALID_INVITATION", "Invalid or expired invitation")
    return invitation


async def validate_invitation(session: AsyncSession, token: str) -> dict[str, Any]:
    invitation = await _usable_invitation(session, token)
    team = await teams_repo.get_team(session, invitation.team_id)
    payload = _serialize_invitation(invitation)
    payload["team_name"] = team.name if team else None
    return payload


async def accept_invitation(
    session: AsyncSession,
    *,
    token: str,
    password: str,
    first_name: str = "",
    last_name: str = "",
) -> Broker:
    """Create the invited member's account and mark the invitation accepted."""
    invitation = await _usable_invitation(session, token)
    if len(password) < MIN_PASSWORD_LENGTH:
        raise _team_error(
            status.HTTP_400_BAD_REQUEST,
            "INVALID_PASSWORD",
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
        )
    if await brokers_repo.get_broker_by_email(session, invitation.email) is not None:
        raise _team_error(status.HTTP_409_CONFLICT, "ACCOUNT_EXISTS", "An account with this email already exists")
    try:
        member = await brokers_repo.create_broker(
            session,
            email=invitation.email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            subscription_tier="team",
            subscription_status="active",
        )
        await brokers_repo.update_broker(session, member.id, team_id=invitation.team_id)
        await teams_repo.set_invitation_status(session, invitation.id, "accepted")
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise _team_error(
            status.HTTP_409_CONFLICT, "ACCOUNT_EXISTS", "An account with this email already exists"
        ) from exc
    await session.refresh(member)
    logger.info("team_invitation_accepted team_id=%s broker_id=%s", invitation.team_id, member.id)
    return member


async def remove_member(session: AsyncSession, broker: Broker, member_id: str) -> None:
    team = await _admin_team(session, broker, create=False)
    if member_id == broker.id:
        raise _team_error(status.HTTP_400_BAD_REQUEST, "CANNOT_REMOVE_ADMIN", "The team admin cannot be removed")
    member = await brokers_repo.get_broker(session, member_id)
    if member is None or member.team_id != team.id:
        raise _team_error(status.HTTP_404_NOT_FOUND, "MEMBER_NOT_FOUND", "Team member not found")
    # Removed members keep their account but lose team access.
    await brokers_repo.update_broker(
        session, member.id, team_id=None, is_team_admin=False, subscription_status="cancelled"
    )
    await session.commit()


async def cancel_invitation(session: AsyncSession, broker: Broker, invitation_id: str) -> None:
    team = await _admin_team(session, broker, create=False)
    invitation = await teams_repo.get_invitation(session, invitation_id)
    if invitation is None or invitation.team_id != team.id:
        raise _team_error(status.HTTP_404_NOT_FOUND, "INVITATION_NOT_FOUND", "Invitation not found")
    await teams_repo.set_invitation_status(session, invitation.id, "cancelled")
    await session.commit()
