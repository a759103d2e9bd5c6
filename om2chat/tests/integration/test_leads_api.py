from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from om2chat.apps.api.main import create_app
from om2chat.tests.utils.auth import create_test_broker
from om2chat.tests.utils.documents import create_test_document


async def _open_link(client: AsyncClient, headers: dict, document_id: str, title: str) -> str:
    created = await client.post(
        "/api/public-links", headers=headers, json={"document_id": document_id, "title": title}
    )
    assert created.status_code == 201
    return created.json()["link_token"]


@pytest.mark.asyncio
async def test_client_sessions_by_email_returns_conversation() -> None:
    broker, headers = await create_test_broker()
    _stranger, stranger_headers = await create_test_broker()
    document_id = await create_test_document(broker.id, title="Riverside Plaza OM")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        token = await _open_link(client, headers, document_id, "Riverside Plaza")
        opened = await client.get(
            f"/api/public-links/{token}", params={"email": "investor@example.com", "name": "Ivy"}
        )
        session_token = opened.json()["clientSession"]["session_token"]
        chatted = await client.post(
            "/api/public-chat", json={"session_token": session_token, "message": "What is the NOI?"}
        )
        assert chatted.status_code == 200

        response = await client.get(
            "/api/broker/client-sessions/by-email",
            headers=headers,
            params={"email": "Investor@Example.com", "documentId": document_id},
        )
        assert response.status_code == 200
        sessions = response.json()["sessions"]
        assert len(sessions) == 1
        assert sessions[0]["client_name"] == "Ivy"
        assert sessions[0]["public_link"]["document_id"] == document_id
        assert "session_token" not in sessions[0]
        history = sessions[0]["chat_histories"]
        assert [message["role"] for message in history] == ["user", "assistant"]
        assert history[0]["content"] == "What is the NOI?"

        missing = await client.get(
            "/api/broker/client-sessions/by-email", headers=headers, params={"email": "investor@example.com"}
        )
        assert missing.status_code == 400
        assert missing.json()["error"]["code"] == "INVALID_REQUEST"

        foreign = await client.get(
            "/api/broker/client-sessions/by-email",
            headers=stranger_headers,
            params={"email": "investor@example.com", "documentId": document_id},
        )
        assert foreign.status_code == 200
        assert foreign.json()["sessions"] == []

        anonymous = await client.get(
            "/api/broker/client-sessions/by-email",
            params={"email": "investor@example.com", "documentId": document_id},
        )
        assert anonymous.status_code == 401


@pytest.mark.asyncio
async def test_email_analytics_groups_leads_per_document() -> None:
    broker, headers = await create_test_broker()
    _stranger, stranger_headers = await create_test_broker()
    plaza_id = await create_test_document(broker.id, title="Riverside Plaza OM")
    depot_id = await create_test_document(broker.id, title="Harbor Depot OM")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        plaza_token = await _open_link(client, headers, plaza_id, "Riverside Plaza")
        depot_token = await _open_link(client, headers, depot_id, "Harbor Depot")
        await client.get(f"/api/public-links/{plaza_token}", params={"email": "a@example.com", "name": "Ann"})
        await client.get(f"/api/public-links/{plaza_token}", params={"email": "A@example.com"})
        await client.get(f"/api/public-links/{plaza_token}", params={"email": "b@example.com"})
        await client.get(f"/api/public-links/{depot_token}", params={"email": "a@example.com"})

        response = await client.get("/api/broker/email-analytics", headers=headers)
        empty = await client.get("/api/broker/email-analytics", headers=stranger_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["total_documents"] == 2
    assert body["total_unique_emails"] == 2
    by_document = {entry["document_id"]: entry for entry in body["documents"]}
    plaza = by_document[plaza_id]
    assert plaza["document_title"] == "Riverside Plaza OM"
    assert plaza["link_title"] == "Riverside Plaza"
    assert plaza["total_unique_emails"] == 2
    leads = {lead["email"]: lead for lead in plaza["emails"]}
    assert leads["a@example.com"]["access_count"] == 2
    assert leads["a@example.com"]["name"] == "Ann"
    assert leads["b@example.com"]["access_count"] == 1
    assert by_document[depot_id]["total_unique_emails"] == 1

    assert empty.json() == {"documents": [], "total_documents": 0, "total_unique_emails": 0}


@pytest.mark.asyncio
async def test_team_member_sees_admin_leads() -> None:
    admin, admin_headers = await create_test_broker(subscription_tier="team")
    document_id = await create_test_document(admin.id)

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        token = await _open_link(client, admin_headers, document_id, "Team Listing")
        await client.get(f"/api/public-links/{token}", params={"email": "lead@example.com"})

        invited = await client.post(
            "/api/team/invite", headers=admin_headers, json={"email": "agent@example.com"}
        )
        accepted = await client.post(
            "/api/team/accept",
            json={"token": invited.json()["invitation"]["token"], "password": "agent-pass"},
        )
        member_headers = {"Authorization": f"Bearer {accepted.json()['token']}"}

        analytics = await client.get("/api/broker/email-analytics", headers=member_headers)
        sessions = await client.get(
            "/api/broker/client-sessions/by-email",
            headers=member_headers,
            params={"email": "lead@example.com", "documentId": document_id},
        )

    assert analytics.json()["total_unique_emails"] == 1
    assert len(sessions.json()["sessions"]) == 1
