from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.core.config import get_settings
from om2chat.domain.models import (
    AnalyticsEvent,
    Broker,
    ChatMessage,
    ClientSession,
    DocumentMetadata,
    ErrorLog,
)
from om2chat.services.cleanup import delete_documents


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retention_config() -> dict[str, dict[str, Any]]:
    settings = get_settings()
    return {
        "documents": {
            "daysToKeep": settings.document_retention_days,
            "description": f"Documents are deleted after {settings.document_retention_days} days",
        },
        "chatHistories": {
            "daysToKeep": settings.chat_retention_days,
            "description": f"Chat histories are deleted after {settings.chat_retention_days} days",
        },
        "clientSessions": {
            "daysToKeep": settings.session_retention_days,
            "description": f"Client sessions are deleted after {settings.session_retention_days} days",
        },
        "analytics": {
            "daysToKeep": settings.analytics_retention_days,
            "description": f"Analytics events are deleted after {settings.analytics_retention_days} days",
        },
        "errorLogs": {
            "daysToKeep": settings.error_log_retention_days,
            "description": f"Error logs are deleted after {settings.error_log_retention_days} days",
        },
    }


def _cutoff(days: int, now: datetime) -> datetime:
    return now - timedelta(days=days)


async def _count(session: AsyncSession, column: Any, cutoff: datetime | None = None) -> int:
    stmt = select(func.count()).select_from(column.class_)
    if cutoff is not None:
        stmt = stmt.where(column < cutoff)
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def get_retention_stats(session: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
    settings = get_settings()
    current = now or _utc_now()
    targets = {
        "documents": (DocumentMetadata.created_at, settings.document_retention_days),
        "chatHistories": (ChatMessage.created_at, settings.chat_retention_days),
        "clientSessions": (ClientSession.last_activity, settings.session_retention_days),
        "analytics": (AnalyticsEvent.created_at, settings.analytics_retention_days),
        "errorLogs": (ErrorLog.created_at, settings.error_log_retention_days),
    }
    stats: dict[str, Any] = {}
    for name, (column, days) in targets.items():
        stats[name] = {
            "total": await _count(session, column),
            "expired": await _count(session, column, _cutoff(days, current)),
        }
    return stats


async def _delete_older_than(session: AsyncSession, name: str, stmt: Any, report: dict[str, Any]) -> None:
    try:
        result = await session.execute(stmt)
        await session.commit()
        report[name] = int(result.rowcount or 0)
    except SQLAlchemyError as exc:
        await session.rollback()
        report.setdefault("errors", []).append(name)
        logger.warning("retention_step_failed step=%s", name, exc_info=exc)


async def _cleanup_documents(session: AsyncSession, cutoff: datetime, report: dict[str, Any]) -> None:
    result = await session.execute(
        select(DocumentMetadata.id, DocumentMetadata.broker_id).where(DocumentMetadata.created_at < cutoff)
    )
    rows = result.all()
    if not rows:
        report["documents"] = 0
        return
    details = await delete_documents(session, [row.id for row in rows])
    report["documents"] = details.get("document_metadata", 0)
    if details.get("errors"):
        report.setdefault("errors", []).extend(f"documents.{step}" for step in details["errors"])
        return
    # Keep the per-broker counters in step with the rows just removed.
    for broker_id, removed in Counter(row.broker_id for row in rows).items():
        await _delete_older_than(
            session,
            f"document_count.{broker_id}",
            update(Broker)
            .where(Broker.id == broker_id)
            .values(
                document_count=case(
                    (Broker.document_count > removed, Broker.document_count - removed), else_=0
                )
            ),
            {},
        )


async def run_cleanup(session: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
    """Delete everything older than its retention window, table by table."""
    settings = get_settings()
    current = now or _utc_now()
    report: dict[str, Any] = {}
    await _cleanup_documents(session, _cutoff(settings.document_retention_days, current), report)
    await _delete_older_than(
        session,
        "chatHistories",
        delete(ChatMessage).where(ChatMessage.created_at < _cutoff(settings.chat_retention_days, current)),
        report,
    )
    await _delete_older_than(
        session,
        "clientSessions",
        delete(ClientSession).where(
            ClientSession.last_activity < _cutoff(settings.session_retention_days, current)
        ),
        report,
    )
    await _delete_older_than(
        session,
        "analytics",
        delete(AnalyticsEvent).where(
            AnalyticsEvent.created_at < _cutoff(settings.analytics_retention_days, current)
        ),
        report,
    )
    await _delete_older_than(
        session,
        "errorLogs",
        delete(ErrorLog).where(ErrorLog.created_at < _cutoff(settings.error_log_retention_days, current)),
        report,
    )
    logger.info("retention_cleanup_complete report=%s", report)
    return report
