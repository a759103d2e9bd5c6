from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from om2chat.apps.api.main import create_app
from om2chat.core.config import get_settings
from om2chat.domain.models import AnalyticsEvent, Broker, ChatMessage, DocumentMetadata, ErrorLog
from om2chat.persistence.db import SessionLocal
from om2chat.persistence.repos import chat_histories as chat_repo
from om2chat.persistence.repos import documents as documents_repo
from om2chat.tests.utils.auth import create_test_broker
from om2chat.tests.utils.documents import create_test_document


def _basic(email: str, password: str) -> dict[str, str]:
    encoded = base64.b64encode(f"{email}:{password}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {encoded}"}


def _admin_app(monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "ops@example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "ops-pass")
    get_settings.cache_clear()
    return create_app()


@pytest.mark.asyncio
async def test_health_reports_checks() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["checks"]["database"] is True
    assert body["checks"]["stripeWebhook"] is False
    assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_error_log_accepts_anonymous_reports() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/error-log",
            json={"error": "TypeError: x is undefined", "componentStack": "at Chat", "severity": "loud"},
        )
        invalid = await client.post("/api/error-log", json={"stack": "no message"})
    assert response.json() == {"success": True}
    assert invalid.status_code == 422

    async with SessionLocal() as session:
        row = (await session.execute(select(ErrorLog))).scalar_one()
    assert row.severity == "error"
    assert row.context == {"component_stack": "at Chat"}
    assert row.broker_id is None


@pytest.mark.asyncio
async def test_admin_requires_basic_credentials(monkeypatch) -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        disabled = await client.get("/api/admin/data-retention")
    assert disabled.status_code == 403

    app = _admin_app(monkeypatch)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        missing = await client.get("/api/admin/data-retention")
        wrong = await client.get("/api/admin/data-retention", headers=_basic("ops@example.com", "nope"))
        ok = await client.get("/api/admin/data-retention", headers=_basic("OPS@example.com", "ops-pass"))
    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert ok.status_code == 200
    assert ok.json()["config"]["chatHistories"]["daysToKeep"] == 7


@pytest.mark.asyncio
async def test_admin_rejects_other_schemes_and_malformed_basic(monkeypatch) -> None:
    app = _admin_app(monkeypatch)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        bearer = await client.get("/api/admin/data-retention", headers={"Authorization": "Bearer ops-pass"})
        garbled = await client.get("/api/admin/data-retention", headers={"Authorization": "Basic %%%"})
    assert bearer.status_code == 401
    assert bearer.headers["WWW-Authenticate"] == "Basic"
    assert garbled.status_code == 401


@pytest.mark.asyncio
async def test_retention_cleanup_removes_expired_rows(monkeypatch) -> None:
    broker, _headers = await create_test_broker()
    fresh_id = await create_test_document(broker.id, title="Fresh OM")
    stale_id = await create_test_document(broker.id, title="Stale OM")
    long_ago = datetime.now(timezone.utc) - timedelta(days=400)

    async with SessionLocal() as session:
        stale = await session.get(DocumentMetadata, stale_id)
        stale.created_at = long_ago
        await chat_repo.add_message(
            session, document_id=fresh_id, broker_id=broker.id, client_session_id=None, role="user", content="old"
        )
        await chat_repo.add_message(
            session, document_id=fresh_id, broker_id=broker.id, client_session_id=None, role="user", content="new"
        )
        session.add(
            AnalyticsEvent(id=str(uuid4()), broker_id=broker.id, event_type="link_view", event_data={}, created_at=long_ago)
        )
        session.add(ErrorLog(id=str(uuid4()), message="boom", severity="error", context={}, created_at=long_ago))
        await session.commit()
        old_message = (
            await session.execute(select(ChatMessage).where(ChatMessage.content == "old"))
        ).scalar_one()
        old_message.created_at = long_ago
        await session.commit()

    app = _admin_app(monkeypatch)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        stats = await client.get("/api/admin/data-retention", headers=_basic("ops@example.com", "ops-pass"))
        assert stats.json()["stats"]["documents"] == {"total": 2, "expired": 1}

        response = await client.post("/api/admin/data-retention", headers=_basic("ops@example.com", "ops-pass"))
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    results = body["results"]
    assert results["documents"] == 1
    assert results["chatHistories"] == 1
    assert results["analytics"] == 1
    assert results["errorLogs"] == 1

    async with SessionLocal() as session:
        remaining = (await session.execute(select(DocumentMetadata.id))).scalars().all()
        owner = await session.get(Broker, broker.id)
        messages = await session.scalar(select(func.count()).select_from(ChatMessage))
        stale_chunks = await documents_repo.count_chunks(session, stale_id)
    assert remaining == [fresh_id]
    assert owner.document_count == 1
    assert messages == 1
    assert stale_chunks == 0
