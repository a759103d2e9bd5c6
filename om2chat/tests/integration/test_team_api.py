from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from om2chat.apps.api.main import create_app
from om2chat.tests.utils.auth import create_test_broker
from om2chat.tests.utils.documents import create_test_document


@pytest.mark.asyncio
async def test_team_requires_team_plan() -> None:
    _broker, headers = await create_test_broker(subscription_tier="individual")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        view = await client.get("/api/team", headers=headers)
        invite = await client.post("/api/team/invite", headers=headers, json={"email": "x@example.com"})
    assert view.status_code == 403
    assert view.json()["error"]["code"] == "TEAM_SUBSCRIPTION_REQUIRED"
    assert invite.status_code == 403


@pytest.mark.asyncio
async def test_invite_accept_and_shared_documents() -> None:
    admin, admin_headers = await create_test_broker(subscription_tier="team", email="admin@example.com")
    document_id = await create_test_document(admin.id)

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        invited = await client.post(
            "/api/team/invite", headers=admin_headers, json={"email": "Member@Example.com"}
        )
        assert invited.status_code == 200
        invitation = invited.json()["invitation"]
        assert invitation["email"] == "member@example.com"
        token = invitation["token"]

        duplicate = await client.post(
            "/api/team/invite", headers=admin_headers, json={"email": "member@example.com"}
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "INVITATION_EXISTS"

        validated = await client.get("/api/team/validate", params={"token": token})
        assert validated.status_code == 200
        assert validated.json()["invitation"]["team_name"] == "Test Realty"

        short = await client.post("/api/team/accept", json={"token": token, "password": "123"})
        assert short.status_code == 400

        accepted = await client.post(
            "/api/team/accept",
            json={"token": token, "password": "member-pass", "firstName": "Mo", "lastName": "Ray"},
        )
        assert accepted.status_code == 200
        member_headers = {"Authorization": f"Bearer {accepted.json()['token']}"}

        reused = await client.post("/api/team/accept", json={"token": token, "password": "member-pass"})
        assert reused.status_code == 400
        assert reused.json()["error"]["code"] == "INVALID_INVITATION"

        # Members act on the admin's documents.
        shared = await client.get("/api/documents", headers=member_headers)
        assert [doc["id"] for doc in shared.json()["documents"]] == [document_id]

        view = await client.get("/api/team", headers=admin_headers)
        assert view.json()["isTeamAdmin"] is True
        members = {member["email"] for member in view.json()["members"]}
        assert members == {"admin@example.com", "member@example.com"}
        member_id = next(m["id"] for m in view.json()["members"] if m["email"] == "member@example.com")

        forbidden = await client.post("/api/team/invite", headers=member_headers, json={"email": "y@example.com"})
        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["code"] == "TEAM_ADMIN_REQUIRED"

        self_remove = await client.delete("/api/team", headers=admin_headers, params={"memberId": admin.id})
        assert self_remove.status_code == 400

        removed = await client.delete("/api/team", headers=admin_headers, params={"memberId": member_id})
        assert removed.status_code == 200
        after = await client.get("/api/documents", headers=member_headers)
        assert after.status_code == 402


@pytest.mark.asyncio
async def test_cancel_invitation() -> None:
    _admin, admin_headers = await create_test_broker(subscription_tier="team")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        invited = await client.post("/api/team/invite", headers=admin_headers, json={"email": "late@example.com"})
        invitation = invited.json()["invitation"]

        neither = await client.delete("/api/team", headers=admin_headers)
        assert neither.status_code == 400

        cancelled = await client.delete(
            "/api/team", headers=admin_headers, params={"invitationId": invitation["id"]}
        )
        assert cancelled.status_code == 200
        validate = await client.get("/api/team/validate", params={"token": invitation["token"]})
        assert validate.status_code == 400
        view = await client.get("/api/team", headers=admin_headers)
        assert view.json()["invitations"] == []
