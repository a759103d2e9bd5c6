from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.persistence.repos import client_sessions as sessions_repo


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def group_leads_by_document(rows: list[Any]) -> dict[str, Any]:
    """Fold captured client sessions into per-document lead lists.

    Each email appears once per document with the number of sessions it
    opened and the earliest time it was seen.
    """
    documents: dict[str, dict[str, Any]] = {}
    all_emails: set[str] = set()
    for row in rows:
        email = (row.client_email or "").strip().lower()
        if not email or not row.document_id:
            continue
        all_emails.add(email)
        entry = documents.setdefault(
            row.document_id,
            {
                "document_id": row.document_id,
                "document_title": row.document_title or "Unknown Document",
                "link_title": row.link_title,
                "emails": {},
            },
        )
        lead = entry["emails"].get(email)
        if lead is None:
            lead = {"email": email, "name": row.client_name or None, "first_accessed": row.first_activity, "access_count": 0}
            entry["emails"][email] = lead
        lead["access_count"] += 1
        if not lead["name"] and row.client_name:
            lead["name"] = row.client_name
        if row.first_activity and (lead["first_accessed"] is None or row.first_activity < lead["first_accessed"]):
            lead["first_accessed"] = row.first_activity

    result = []
    for entry in documents.values():
        leads = sorted(
            entry["emails"].values(),
            key=lambda lead: lead["first_accessed"].timestamp() if lead["first_accessed"] else 0.0,
            reverse=True,
        )
        result.append(
            {
                "document_id": entry["document_id"],
                "document_title": entry["document_title"],
                "link_title": entry["link_title"],
                "emails": [{**lead, "first_accessed": _iso(lead["first_accessed"])} for lead in leads],
                "total_unique_emails": len(leads),
            }
        )
    return {
        "documents": result,
        "total_documents": len(result),
        "total_unique_emails": len(all_emails),
    }


async def get_email_analytics(session: AsyncSession, owner_ids: set[str]) -> dict[str, Any]:
    rows = await sessions_repo.list_captured_leads(session, owner_ids)
    return group_leads_by_document(rows)
