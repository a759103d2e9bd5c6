from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from om2chat.apps.api.main import create_app
from om2chat.core.config import get_settings
from om2chat.domain.models import Broker, DocumentChunk, DocumentMetadata
from om2chat.persistence.db import SessionLocal
from om2chat.tests.utils.auth import create_test_broker, create_trial_broker
from om2chat.tests.utils.documents import OM_TEXT, create_test_document


def _pdf_file(size: int = 64) -> dict:
    return {"file": ("Riverside Plaza.pdf", b"%PDF-1.4" + b"0" * size, "application/pdf")}


@pytest.mark.asyncio
async def test_process_document_stores_chunks(monkeypatch) -> None:
    broker, headers = await create_test_broker()

    async def _fake_extract(data: bytes) -> str:
        return OM_TEXT

    monkeypatch.setattr("om2chat.apps.api.routes.documents.extract_pdf_text", _fake_extract)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/process-document", headers=headers, files=_pdf_file())
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["title"] == "Riverside Plaza"
        assert body["chunks"] >= 1
        assert body["failed"] == 0

        listing = await client.get("/api/documents", headers=headers)
        assert listing.status_code == 200
        documents = listing.json()["documents"]
        assert [doc["id"] for doc in documents] == [body["documentId"]]
        assert documents[0]["chunk_count"] == body["chunks"]

    async with SessionLocal() as session:
        owner = await session.get(Broker, broker.id)
        chunk_count = await session.scalar(
            select(func.count()).select_from(DocumentChunk).where(DocumentChunk.file_id == body["documentId"])
        )
    assert owner.document_count == 1
    assert chunk_count == body["chunks"]


@pytest.mark.asyncio
async def test_process_document_rejects_oversized_upload_before_parsing(monkeypatch) -> None:
    _broker, headers = await create_test_broker()
    calls: list[int] = []

    async def _fake_extract(data: bytes) -> str:
        calls.append(len(data))
        return OM_TEXT

    monkeypatch.setenv("MAX_UPLOAD_BYTES", "32")
    get_settings.cache_clear()
    monkeypatch.setattr("om2chat.apps.api.routes.documents.extract_pdf_text", _fake_extract)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/process-document", headers=headers, files=_pdf_file(size=256))
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "FILE_TOO_LARGE"

        declared = await client.post(
            "/api/process-document",
            headers=headers,
            json={"fileUrl": "https://files.example.com/om.pdf", "fileName": "om.pdf", "fileSize": 10_000},
        )
        assert declared.status_code == 413
    assert calls == []


@pytest.mark.asyncio
async def test_process_document_requires_auth_and_text(monkeypatch) -> None:
    _broker, headers = await create_test_broker()

    async def _empty_extract(data: bytes) -> str:
        return "   "

    monkeypatch.setattr("om2chat.apps.api.routes.documents.extract_pdf_text", _empty_extract)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        anonymous = await client.post("/api/process-document", files=_pdf_file())
        assert anonymous.status_code == 401

        empty = await client.post("/api/process-document", headers=headers, files=_pdf_file())
        assert empty.status_code == 400
        assert empty.json()["error"]["code"] == "NO_TEXT_CONTENT"

    async with SessionLocal() as session:
        assert await session.scalar(select(func.count()).select_from(DocumentMetadata)) == 0


@pytest.mark.asyncio
async def test_trial_document_limit(monkeypatch) -> None:
    broker, headers = await create_trial_broker()
    monkeypatch.setenv("DOC_LIMIT_TRIAL", "1")
    get_settings.cache_clear()
    await create_test_document(broker.id)

    async def _fake_extract(data: bytes) -> str:
        return OM_TEXT

    monkeypatch.setattr("om2chat.apps.api.routes.documents.extract_pdf_text", _fake_extract)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/process-document", headers=headers, files=_pdf_file())
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "DOCUMENT_LIMIT_REACHED"


@pytest.mark.asyncio
async def test_reprocess_replaces_chunks(monkeypatch) -> None:
    broker, headers = await create_test_broker()
    document_id = await create_test_document(broker.id)

    async def _fake_extract(data: bytes) -> str:
        return "Updated rent roll. Occupancy is now 97 percent."

    monkeypatch.setattr("om2chat.apps.api.routes.documents.extract_pdf_text", _fake_extract)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/process-document",
            headers=headers,
            files=_pdf_file(),
            data={"existingDocumentId": document_id},
        )
        assert response.status_code == 200
        assert response.json()["documentId"] == document_id
        assert response.json()["title"] == "Riverside Plaza OM"

        missing_source = await client.post(
            "/api/process-document", headers=headers, json={"existingDocumentId": document_id}
        )
        assert missing_source.status_code == 422

    async with SessionLocal() as session:
        result = await session.execute(
            select(DocumentChunk.content).where(DocumentChunk.file_id == document_id).order_by(DocumentChunk.chunk_index)
        )
        contents = list(result.scalars().all())
        owner = await session.get(Broker, broker.id)
    assert contents == ["Updated rent roll Occupancy is now 97 percent"]
    assert owner.document_count == 1


@pytest.mark.asyncio
async def test_document_access_is_owner_scoped() -> None:
    owner, owner_headers = await create_test_broker()
    _other, other_headers = await create_test_broker()
    document_id = await create_test_document(owner.id)

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        foreign = await client.get(f"/api/documents/{document_id}", headers=other_headers)
        assert foreign.status_code == 404
        foreign_delete = await client.delete(f"/api/documents/{document_id}", headers=other_headers)
        assert foreign_delete.status_code == 404

        mine = await client.get(f"/api/documents/{document_id}", headers=owner_headers)
        assert mine.status_code == 200
        assert mine.json()["document"]["chunk_count"] > 0

        deleted = await client.delete(f"/api/documents/{document_id}", headers=owner_headers)
        assert deleted.status_code == 200
        assert deleted.json()["deleted"]["document_metadata"] == 1

    async with SessionLocal() as session:
        assert await session.get(DocumentMetadata, document_id) is None
        assert await session.scalar(select(func.count()).select_from(DocumentChunk)) == 0
        refreshed = await session.get(Broker, owner.id)
    assert refreshed.document_count == 0
