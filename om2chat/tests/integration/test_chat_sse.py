from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from om2chat.apps.api.main import create_app
from om2chat.domain.models import AnalyticsEvent, ChatMessage
from om2chat.persistence.db import SessionLocal
from om2chat.tests.utils.auth import create_test_broker
from om2chat.tests.utils.documents import create_test_document


def _message(text: str) -> dict:
    return {"role": "user", "parts": [{"type": "text", "text": text}]}


def _parse_frames(body: str) -> list[dict | str]:
    frames: list[dict | str] = []
    for block in body.split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: "):]
        frames.append(data if data == "[DONE]" else json.loads(data))
    return frames


@pytest.mark.asyncio
async def test_document_chat_streams_frames_and_persists() -> None:
    broker, headers = await create_test_broker()
    document_id = await create_test_document(broker.id)

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/chat",
            headers=headers,
            json={"id": document_id, "message": _message("What is the asking price?")},
        )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"

    frames = _parse_frames(response.text)
    assert frames[0] == {"type": "start-step"}
    assert frames[1]["type"] == "text-start"
    deltas = [frame["delta"] for frame in frames if isinstance(frame, dict) and frame["type"] == "text-delta"]
    assert "".join(deltas) == "This is a fake response. "
    assert frames[-4:] == [
        {"type": "text-end", "id": frames[1]["id"]},
        {"type": "finish-step"},
        {"type": "finish"},
        "[DONE]",
    ]

    async with SessionLocal() as session:
        result = await session.execute(
            select(ChatMessage.role, ChatMessage.content).where(ChatMessage.document_id == document_id)
        )
        rows = {role: content for role, content in result.all()}
        events = (
            await session.execute(select(AnalyticsEvent).where(AnalyticsEvent.broker_id == broker.id))
        ).scalars().all()
    assert rows == {"user": "What is the asking price?", "assistant": "This is a fake response. "}
    assert [event.event_type for event in events] == ["chat_message"]
    assert events[0].event_data["message_count"] == 2


@pytest.mark.asyncio
async def test_generic_chat_does_not_persist() -> None:
    _broker, headers = await create_test_broker()
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/chat", headers=headers, json={"id": "scratchpad", "message": _message("Hello")}
        )
    assert response.status_code == 200
    assert _parse_frames(response.text)[-1] == "[DONE]"

    async with SessionLocal() as session:
        assert (await session.execute(select(ChatMessage))).scalars().all() == []


@pytest.mark.asyncio
async def test_chat_rejects_bad_requests() -> None:
    owner, _owner_headers = await create_test_broker()
    _other, other_headers = await create_test_broker()
    document_id = await create_test_document(owner.id)

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        anonymous = await client.post("/api/chat", json={"id": document_id, "message": _message("hi")})
        assert anonymous.status_code == 401

        empty = await client.post(
            "/api/chat", headers=other_headers, json={"id": document_id, "message": {"parts": []}}
        )
        assert empty.status_code == 400
        assert empty.json()["error"]["code"] == "INVALID_MESSAGE"

        foreign = await client.post(
            "/api/chat", headers=other_headers, json={"id": document_id, "message": _message("hi")}
        )
        assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_document_chat_falls_back_when_similarity_search_fails(monkeypatch) -> None:
    # SQLite has no match_documents function, so the similarity query fails and the
    # chat must continue on the first chunks of the document.
    monkeypatch.setattr("om2chat.services.retrieval.is_postgres", lambda: True)
    broker, headers = await create_test_broker()
    document_id = await create_test_document(broker.id)

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/chat",
            headers=headers,
            json={"id": document_id, "message": _message("What is the NOI?")},
        )
    assert response.status_code == 200
    frames = _parse_frames(response.text)
    assert frames[0] == {"type": "start-step"}
    assert frames[-1] == "[DONE]"

    async with SessionLocal() as session:
        result = await session.execute(
            select(ChatMessage.role).where(ChatMessage.document_id == document_id)
        )
        assert sorted(result.scalars().all()) == ["assistant", "user"]
