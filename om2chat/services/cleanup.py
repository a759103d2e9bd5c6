from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.domain.models import (
    AnalyticsEvent,
    Broker,
    ChatMessage,
    ClientSession,
    DocumentChunk,
    DocumentMetadata,
    PublicLink,
    Team,
    TeamInvitation,
)


logger = logging.getLogger(__name__)


async def _run_step(session: AsyncSession, name: str, stmt: Any, report: dict[str, Any]) -> None:
    # Each step commits on its own; a failed step is reported and later steps still run.
    try:
        result = await session.execute(stmt)
        await session.commit()
        report[name] = int(result.rowcount or 0)
    except SQLAlchemyError as exc:
        await session.rollback()
        report.setdefault("errors", []).append(name)
        logger.warning("cleanup_step_failed step=%s", name, exc_info=exc)


async def delete_documents(session: AsyncSession, document_ids: list[str]) -> dict[str, Any]:
    """Delete documents and everything hanging off them, one table at a time."""
    report: dict[str, Any] = {}
    if not document_ids:
        return report
    link_ids = select(PublicLink.id).where(PublicLink.document_id.in_(document_ids)).scalar_subquery()
    await _run_step(session, "chunks", delete(DocumentChunk).where(DocumentChunk.file_id.in_(document_ids)), report)
    await _run_step(
        session, "client_sessions", delete(ClientSession).where(ClientSession.public_link_id.in_(link_ids)), report
    )
    await _run_step(session, "public_links", delete(PublicLink).where(PublicLink.document_id.in_(document_ids)), report)
    await _run_step(session, "chat_histories", delete(ChatMessage).where(ChatMessage.document_id.in_(document_ids)), report)
    await _run_step(
        session, "document_metadata", delete(DocumentMetadata).where(DocumentMetadata.id.in_(document_ids)), report
    )
    return report


async def delete_broker_data(
    session: AsyncSession,
    broker_id: str,
    *,
    team_id: str | None = None,
    is_team_admin: bool = False,
) -> dict[str, Any]:
    """Remove every row owned by ``broker_id`` and then the broker itself.

    Statements run sequentially without a spanning transaction, so a failure
    part way leaves earlier deletions in place. Callers pass plain values
    because a failed step rolls back the session and expires loaded rows.
    """
    result = await session.execute(select(DocumentMetadata.id).where(DocumentMetadata.broker_id == broker_id))
    document_ids = list(result.scalars().all())
    report = await delete_documents(session, document_ids)

    await _run_step(session, "remaining_client_sessions", delete(ClientSession).where(ClientSession.broker_id == broker_id), report)
    await _run_step(session, "remaining_public_links", delete(PublicLink).where(PublicLink.broker_id == broker_id), report)
    await _run_step(session, "remaining_chat_histories", delete(ChatMessage).where(ChatMessage.broker_id == broker_id), report)
    await _run_step(session, "analytics", delete(AnalyticsEvent).where(AnalyticsEvent.broker_id == broker_id), report)

    if is_team_admin and team_id:
        # Members lose the seat the admin was paying for.
        await _run_step(
            session,
            "team_members_detached",
            update(Broker)
            .where(Broker.team_id == team_id, Broker.id != broker_id)
            .values(team_id=None, is_team_admin=False, subscription_status="cancelled"),
            report,
        )
        await _run_step(
            session, "team_invitations", delete(TeamInvitation).where(TeamInvitation.team_id == team_id), report
        )
    await _run_step(session, "teams", delete(Team).where(Team.admin_broker_id == broker_id), report)
    await _run_step(session, "broker", delete(Broker).where(Broker.id == broker_id), report)
    return report
