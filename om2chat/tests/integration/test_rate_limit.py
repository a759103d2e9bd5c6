from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from om2chat.apps.api import rate_limit
from om2chat.apps.api.main import create_app
from om2chat.core.config import get_settings
from om2chat.tests.utils.auth import create_test_broker
from om2chat.tests.utils.documents import create_test_document


def _build_app(monkeypatch, **env_overrides: str):
    # Enable the memory backend and reset cached settings/limiter state.
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    for key, value in env_overrides.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
    return create_app()


@pytest.mark.asyncio
async def test_auth_endpoints_throttle_after_five_attempts(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    payload = {"email": "brute@example.com", "password": "wrong-password"}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        for _ in range(5):
            response = await client.post("/api/auth/login", json=payload)
            assert response.status_code == 200
        blocked = await client.post("/api/auth/login", json=payload)

    assert blocked.status_code == 429
    assert int(blocked.headers["Retry-After"]) >= 1
    assert blocked.headers["X-RateLimit-Remaining"] == "0"
    body = blocked.json()
    assert body["error"]["code"] == "RATE_LIMITED"
    assert body["error"]["details"]["bucket"] == "auth"


@pytest.mark.asyncio
async def test_chat_stream_carries_rate_limit_headers(monkeypatch) -> None:
    broker, headers = await create_test_broker()
    document_id = await create_test_document(broker.id)
    app = _build_app(monkeypatch)
    message = {"parts": [{"type": "text", "text": "Cap rate?"}]}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/chat", headers=headers, json={"id": document_id, "message": message})

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "50"
    assert response.headers["X-RateLimit-Remaining"] == "49"


@pytest.mark.asyncio
async def test_public_chat_is_limited_per_ip(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    guest_limit = 20
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        for _ in range(guest_limit):
            response = await client.post(
                "/api/public-chat",
                headers={"X-Forwarded-For": "198.51.100.7"},
                json={"session_token": "session_unknown", "message": "hi"},
            )
            assert response.status_code == 401
        blocked = await client.post(
            "/api/public-chat",
            headers={"X-Forwarded-For": "198.51.100.7"},
            json={"session_token": "session_unknown", "message": "hi"},
        )
        other_ip = await client.post(
            "/api/public-chat",
            headers={"X-Forwarded-For": "198.51.100.8"},
            json={"session_token": "session_unknown", "message": "hi"},
        )

    assert blocked.status_code == 429
    assert "Retry-After" in blocked.headers
    assert other_ip.status_code == 401


@pytest.mark.asyncio
async def test_daily_message_limit(monkeypatch) -> None:
    _broker, headers = await create_test_broker()
    app = _build_app(monkeypatch)
    backend = rate_limit.get_rate_limit_backend()
    message = {"parts": [{"type": "text", "text": "hello"}]}

    async def _exhausted(key: str, *, limit: int) -> rate_limit.DailyDecision:
        return rate_limit.DailyDecision(allowed=False, count=limit, limit=limit)

    monkeypatch.setattr(backend, "consume_daily", _exhausted)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/chat", headers=headers, json={"id": "general", "message": message})

    assert response.status_code == 429
    assert response.json()["error"]["code"] == "DAILY_LIMIT_EXCEEDED"
