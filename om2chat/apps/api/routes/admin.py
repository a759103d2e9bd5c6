from __future__ import annotations

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_db, require_admin
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.services.retention import get_retention_stats, retention_config, run_cleanup


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/data-retention")
async def retention_overview(
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    stats = await get_retention_stats(db)
    return {"success": True, "stats": stats, "config": retention_config(), "timestamp": _timestamp()}


@router.post("/data-retention")
async def retention_cleanup(
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    logger.info("retention_cleanup_requested admin=%s", admin)
    report = await run_cleanup(db)
    return {
        "success": not report.get("errors"),
        "message": "Data retention cleanup completed",
        "results": report,
        "timestamp": _timestamp(),
    }
