from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from om2chat.apps.api.main import create_app
from om2chat.core.config import get_settings
from om2chat.domain.models import Broker
from om2chat.persistence.db import SessionLocal
from om2chat.persistence.repos import brokers as brokers_repo
from om2chat.tests.utils.auth import TEST_PASSWORD, create_test_broker, create_trial_broker


def _register_payload(email: str = "new.broker@example.com") -> dict:
    return {
        "email": email,
        "password": "s3cret-pass",
        "first_name": "Dana",
        "last_name": "Lee",
        "company_name": "Lee Commercial",
    }


@pytest.mark.asyncio
async def test_register_starts_trial_and_sets_cookie() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/auth/register", json=_register_payload())
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["token"]
        assert body["broker"]["email"] == "new.broker@example.com"
        assert get_settings().auth_cookie_name in response.cookies

        session_response = await client.get(
            "/api/auth/session", headers={"Authorization": f"Bearer {body['token']}"}
        )
        assert session_response.status_code == 200

        trial = await client.get("/api/auth/check-trial", headers={"Authorization": f"Bearer {body['token']}"})
        assert trial.json()["isValid"] is True
        assert trial.json()["reason"] == "trial"

    async with SessionLocal() as session:
        broker = await brokers_repo.get_broker_by_email(session, "new.broker@example.com")
    assert broker is not None
    assert broker.subscription_status == "trial"
    assert broker.password_hash != "s3cret-pass"


@pytest.mark.asyncio
async def test_register_duplicate_and_invalid_data() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/api/auth/register", json=_register_payload())
        assert first.json()["status"] == "success"
        # Email comparison is case-insensitive.
        duplicate = await client.post("/api/auth/register", json=_register_payload("NEW.BROKER@example.com"))
        assert duplicate.json() == {"status": "user_exists"}

        short_password = dict(_register_payload("other@example.com"), password="123")
        invalid = await client.post("/api/auth/register", json=short_password)
        assert invalid.json() == {"status": "invalid_data"}


@pytest.mark.asyncio
async def test_register_blocks_banned_email() -> None:
    async with SessionLocal() as session:
        await brokers_repo.ban_email(session, "returning@example.com", reason="subscription_cancelled")
        await session.commit()

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/auth/register", json=_register_payload("returning@example.com"))
    assert response.json() == {"status": "trial_unavailable"}


@pytest.mark.asyncio
async def test_login_success_and_failure() -> None:
    broker, _headers = await create_test_broker(email="login@example.com")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        ok = await client.post("/api/auth/login", json={"email": "login@example.com", "password": TEST_PASSWORD})
        assert ok.json()["status"] == "success"
        assert ok.json()["broker"]["id"] == broker.id

        wrong = await client.post("/api/auth/login", json={"email": "login@example.com", "password": "wrong-pass"})
        assert wrong.json() == {"status": "invalid_credentials"}

        unknown = await client.post("/api/auth/login", json={"email": "nobody@example.com", "password": "whatever"})
        assert unknown.json() == {"status": "invalid_credentials"}


@pytest.mark.asyncio
async def test_session_requires_auth_envelope() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/auth/session", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}


@pytest.mark.asyncio
async def test_password_reset_token_is_single_use(monkeypatch) -> None:
    await create_test_broker(email="reset@example.com")
    sent: dict[str, str] = {}

    async def _capture(email: str, raw_token: str) -> bool:
        sent["email"] = email
        sent["token"] = raw_token
        return True

    monkeypatch.setattr("om2chat.services.auth.actions.send_password_reset_email", _capture)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        unknown = await client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        assert unknown.json() == {"status": "success"}
        assert sent == {}

        requested = await client.post("/api/auth/forgot-password", json={"email": "reset@example.com"})
        assert requested.json() == {"status": "success"}
        assert sent["email"] == "reset@example.com"

        first = await client.post("/api/auth/set-password", json={"token": sent["token"], "password": "brand-new-pass"})
        assert first.json() == {"status": "success"}
        reused = await client.post("/api/auth/set-password", json={"token": sent["token"], "password": "another-pass"})
        assert reused.json() == {"status": "invalid_token"}

        login = await client.post("/api/auth/login", json={"email": "reset@example.com", "password": "brand-new-pass"})
        assert login.json()["status"] == "success"

    async with SessionLocal() as session:
        result = await session.execute(select(Broker).where(Broker.email == "reset@example.com"))
        broker = result.scalar_one()
    # Only the hash is stored.
    assert broker.reset_token is None


@pytest.mark.asyncio
async def test_change_password_checks_current_password() -> None:
    _broker, headers = await create_test_broker(email="change@example.com")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        wrong = await client.post(
            "/api/auth/change-password",
            headers=headers,
            json={"current_password": "not-it", "new_password": "updated-pass"},
        )
        assert wrong.json() == {"status": "invalid_credentials"}
        ok = await client.post(
            "/api/auth/change-password",
            headers=headers,
            json={"current_password": TEST_PASSWORD, "new_password": "updated-pass"},
        )
        assert ok.json() == {"status": "success"}


@pytest.mark.asyncio
async def test_expired_trial_is_gated() -> None:
    _broker, headers = await create_trial_broker(expired=True)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        trial = await client.get("/api/auth/check-trial", headers=headers)
        assert trial.json()["isValid"] is False
        assert trial.json()["reason"] == "trial_expired"

        documents = await client.get("/api/documents", headers=headers)
        assert documents.status_code == 402
        assert documents.json()["error"]["code"] == "TRIAL_EXPIRED"


@pytest.mark.asyncio
async def test_update_profile() -> None:
    _broker, headers = await create_test_broker()
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.put(
            "/api/profile",
            headers=headers,
            json={"first_name": "Jo", "last_name": "Park", "company_name": "Park CRE", "phone": "555-0100"},
        )
        assert response.status_code == 200
        assert response.json()["user"]["company_name"] == "Park CRE"

        invalid = await client.put(
            "/api/profile", headers=headers, json={"first_name": "", "last_name": "Park", "company_name": "X"}
        )
        assert invalid.status_code == 422
