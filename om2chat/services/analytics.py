from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.domain.models import ANALYTICS_EVENT_TYPES, AnalyticsEvent
from om2chat.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

EVENT_LINK_VIEW = "link_view"
EVENT_EMAIL_CAPTURE = "email_capture"
EVENT_CHAT_MESSAGE = "chat_message"
EVENT_DOCUMENT_DOWNLOAD = "document_download"

_RECENT_EVENTS_LIMIT = 50


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def track_event(
    *,
    event_type: str,
    broker_id: str | None,
    public_link_id: str | None = None,
    client_session_id: str | None = None,
    event_data: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> bool:
    """Append one analytics event in its own session.

    Tracking is best effort: failures are logged and reported as ``False`` so
    the calling request never fails because of analytics.
    """
    if event_type not in ANALYTICS_EVENT_TYPES:
        logger.warning("analytics_event_rejected event_type=%s", event_type)
        return False
    try:
        async with SessionLocal() as session:
            session.add(
                AnalyticsEvent(
                    id=str(uuid4()),
                    broker_id=broker_id,
                    public_link_id=public_link_id,
                    client_session_id=client_session_id,
                    event_type=event_type,
                    event_data=event_data or {},
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
            await session.commit()
    except SQLAlchemyError as exc:
        logger.warning("analytics_track_failed event_type=%s", event_type, exc_info=exc)
        return False
    return True


def _serialize_event(event: AnalyticsEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "public_link_id": event.public_link_id,
        "client_session_id": event.client_session_id,
        "event_data": event.event_data or {},
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


async def get_summary(
    session: AsyncSession,
    *,
    broker_id: str,
    public_link_id: str | None = None,
    days: int = 30,
) -> dict[str, Any]:
    since = _utc_now() - timedelta(days=max(1, days))
    filters = [AnalyticsEvent.broker_id == broker_id, AnalyticsEvent.created_at >= since]
    if public_link_id:
        filters.append(AnalyticsEvent.public_link_id == public_link_id)

    counts_result = await session.execute(
        select(AnalyticsEvent.event_type, func.count())
        .where(*filters)
        .group_by(AnalyticsEvent.event_type)
    )
    counts = {event_type: int(count) for event_type, count in counts_result.all()}

    sessions_result = await session.execute(
        select(func.count(distinct(AnalyticsEvent.client_session_id))).where(
            *filters, AnalyticsEvent.client_session_id.is_not(None)
        )
    )
    recent_result = await session.execute(
        select(AnalyticsEvent)
        .where(*filters)
        .order_by(AnalyticsEvent.created_at.desc(), AnalyticsEvent.id)
        .limit(_RECENT_EVENTS_LIMIT)
    )
    return {
        "summary": {
            "totalViews": counts.get(EVENT_LINK_VIEW, 0),
            "emailCaptures": counts.get(EVENT_EMAIL_CAPTURE, 0),
            "chatMessages": counts.get(EVENT_CHAT_MESSAGE, 0),
            "documentDownloads": counts.get(EVENT_DOCUMENT_DOWNLOAD, 0),
            "uniqueSessions": int(sessions_result.scalar() or 0),
        },
        "events": [_serialize_event(event) for event in recent_result.scalars().all()],
        "days": days,
    }
