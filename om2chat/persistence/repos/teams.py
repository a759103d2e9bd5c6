from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.domain.models import Broker, Team, TeamInvitation


async def get_team(session: AsyncSession, team_id: str) -> Team | None:
    result = await session.execute(select(Team).where(Team.id == team_id))
    return result.scalar_one_or_none()


async def get_team_for_admin(session: AsyncSession, admin_broker_id: str) -> Team | None:
    result = await session.execute(select(Team).where(Team.admin_broker_id == admin_broker_id))
    return result.scalar_one_or_none()


async def create_team(session: AsyncSession, *, name: str, admin_broker_id: str) -> Team:
    team = Team(id=str(uuid4()), name=name, admin_broker_id=admin_broker_id)
    session.add(team)
    await session.flush()
    await session.execute(
        update(Broker)
        .where(Broker.id == admin_broker_id)
        .values(team_id=team.id, is_team_admin=True)
    )
    return team


async def list_members(session: AsyncSession, team_id: str) -> list[Broker]:
    result = await session.execute(
        select(Broker).where(Broker.team_id == team_id).order_by(Broker.created_at, Broker.id)
    )
    return list(result.scalars().all())


async def create_invitation(
    session: AsyncSession,
    *,
    team_id: str,
    admin_broker_id: str,
    email: str,
    token: str,
    expires_at: datetime,
) -> TeamInvitation:
    invitation = TeamInvitation(
        id=str(uuid4()),
        team_id=team_id,
        admin_broker_id=admin_broker_id,
        email=email,
        token=token,
        status="pending",
        expires_at=expires_at,
    )
    session.add(invitation)
    await session.flush()
    return invitation


async def list_pending_invitations(session: AsyncSession, team_id: str) -> list[TeamInvitation]:
    result = await session.execute(
        select(TeamInvitation)
        .where(TeamInvitation.team_id == team_id, TeamInvitation.status == "pending")
        .order_by(TeamInvitation.created_at, TeamInvitation.id)
    )
    return list(result.scalars().all())


async def get_pending_invitation(
    session: AsyncSession, *, team_id: str, email: str
) -> TeamInvitation | None:
    result = await session.execute(
        select(TeamInvitation).where(
            TeamInvitation.team_id == team_id,
            TeamInvitation.email == email,
            TeamInvitation.status == "pending",
        )
    )
    return result.scalar_one_or_none()


async def get_invitation(session: AsyncSession, invitation_id: str) -> TeamInvitation | None:
    result = await session.execute(select(TeamInvitation).where(TeamInvitation.id == invitation_id))
    return result.scalar_one_or_none()


async def get_invitation_by_token(session: AsyncSession, token: str) -> TeamInvitation | None:
    result = await session.execute(select(TeamInvitation).where(TeamInvitation.token == token))
    return result.scalar_one_or_none()


async def set_invitation_status(session: AsyncSession, invitation_id: str, status: str) -> None:
    await session.execute(
        update(TeamInvitation).where(TeamInvitation.id == invitation_id).values(status=status)
    )
