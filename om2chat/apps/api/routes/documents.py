from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile

from om2chat.apps.api.deps import get_active_broker, get_db, get_optional_broker
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.apps.api.rate_limit import BUCKET_UPLOAD, enforce_rate_limit
from om2chat.core.config import get_settings
from om2chat.core.errors import DocumentFetchError, PdfExtractionError
from om2chat.domain.models import Broker, DocumentMetadata
from om2chat.ingestion.pdf import extract_pdf_text
from om2chat.persistence.repos import brokers as brokers_repo
from om2chat.persistence.repos import documents as documents_repo
from om2chat.providers.embeddings.factory import get_embedding_provider
from om2chat.services.cleanup import delete_documents
from om2chat.services.entitlements import (
    WINDOW_MS_MINUTE,
    document_limit,
    limits_for,
    require_active_subscription,
)
from om2chat.services.ingestion import (
    UploadTooLargeError,
    fetch_document_bytes,
    ingest_text,
    title_from_filename,
)
from om2chat.services.teams import resolve_owner_broker_id


logger = logging.getLogger(__name__)

router = APIRouter(tags=["documents"], responses=DEFAULT_ERROR_RESPONSES)


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _too_large() -> HTTPException:
    max_mb = get_settings().max_upload_bytes // (1024 * 1024)
    return _error(
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        "FILE_TOO_LARGE",
        f"File exceeds the {max_mb}MB upload limit",
    )


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _read_upload_request(request: Request) -> dict[str, Any]:
    """Normalize multipart and JSON upload bodies into one dict."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        existing_id = form.get("existingDocumentId")
        return {
            "file": upload if isinstance(upload, UploadFile) else None,
            "existing_document_id": existing_id if isinstance(existing_id, str) and existing_id else None,
            "file_url": None,
            "file_name": upload.filename if isinstance(upload, UploadFile) else None,
            "file_size": upload.size if isinstance(upload, UploadFile) else None,
        }
    try:
        body = await request.json()
    except ValueError as exc:
        raise _error(status.HTTP_400_BAD_REQUEST, "INVALID_BODY", "Expected multipart form or JSON body") from exc
    if not isinstance(body, dict):
        raise _error(status.HTTP_400_BAD_REQUEST, "INVALID_BODY", "Expected a JSON object")
    return {
        "file": None,
        "existing_document_id": body.get("existingDocumentId") or None,
        "file_url": body.get("fileUrl") or None,
        "file_name": body.get("fileName") or None,
        "file_size": _as_int(body.get("fileSize")),
    }


@router.post("/process-document")
async def process_document(
    request: Request,
    response: Response,
    broker: Broker | None = Depends(get_optional_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    settings = get_settings()
    # Throttle before any auth or parsing work.
    await enforce_rate_limit(
        request=request,
        response=response,
        bucket=BUCKET_UPLOAD,
        max_requests=limits_for(broker).upload_per_minute,
        window_ms=WINDOW_MS_MINUTE,
        user_id=broker.id if broker else None,
    )
    if broker is None:
        raise _error(status.HTTP_401_UNAUTHORIZED, "AUTH_UNAUTHORIZED", "Authentication required")
    require_active_subscription(broker)

    content_length = _as_int(request.headers.get("content-length"))
    if content_length is not None and content_length > settings.max_upload_bytes:
        raise _too_large()

    upload = await _read_upload_request(request)
    if upload["file_size"] is not None and upload["file_size"] > settings.max_upload_bytes:
        raise _too_large()

    owner_id = await resolve_owner_broker_id(db, broker)
    existing: DocumentMetadata | None = None
    if upload["existing_document_id"]:
        existing = await documents_repo.get_owned_document(db, upload["existing_document_id"], owner_id)
        if existing is None:
            raise _error(status.HTTP_404_NOT_FOUND, "DOCUMENT_NOT_FOUND", "Document not found")
    else:
        owner = broker if owner_id == broker.id else await brokers_repo.get_broker(db, owner_id)
        limit = document_limit(owner or broker)
        if await documents_repo.count_documents(db, owner_id) >= limit:
            raise _error(
                status.HTTP_403_FORBIDDEN,
                "DOCUMENT_LIMIT_REACHED",
                f"Document limit of {limit} reached for your plan",
            )

    source_url = upload["file_url"] or (existing.url if existing else None)
    if upload["file"] is not None:
        data = await upload["file"].read()
    elif source_url:
        try:
            data = await fetch_document_bytes(source_url, max_bytes=settings.max_upload_bytes)
        except UploadTooLargeError as exc:
            raise _too_large() from exc
        except DocumentFetchError as exc:
            raise _error(status.HTTP_400_BAD_REQUEST, "DOCUMENT_FETCH_FAILED", str(exc)) from exc
    elif existing is not None:
        raise _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "DOCUMENT_SOURCE_UNAVAILABLE",
            "Original file is not stored; upload the PDF again",
        )
    else:
        raise _error(status.HTTP_400_BAD_REQUEST, "NO_FILE", "No file provided")
    if len(data) > settings.max_upload_bytes:
        raise _too_large()

    try:
        text = await extract_pdf_text(data)
    except PdfExtractionError as exc:
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "PDF_PARSE_FAILED", "Failed to parse PDF") from exc
    if not text.strip():
        raise _error(status.HTTP_400_BAD_REQUEST, "NO_TEXT_CONTENT", "No text content found in PDF")

    title = existing.title if existing else title_from_filename(upload["file_name"])
    try:
        if existing is None:
            document = await documents_repo.create_document(
                db, title=title, url=upload["file_url"], broker_id=owner_id
            )
            await brokers_repo.adjust_document_count(db, owner_id, 1)
        else:
            document = existing
            # Reprocessing replaces the previous chunk set.
            await documents_repo.delete_chunks(db, document.id)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("document_metadata_failed broker_id=%s", broker.id, exc_info=exc)
        raise _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "METADATA_INSERT_FAILED", "Failed to save document"
        ) from exc

    # Chunk rollbacks expire loaded rows; keep plain ids from here on.
    document_id = document.id
    broker_id = broker.id
    embedder = get_embedding_provider()
    try:
        result = await ingest_text(
            db, document_id=document_id, user_id=broker_id, text=text, embedder=embedder
        )
    finally:
        await embedder.aclose()

    return {
        "success": True,
        "message": f"Processed {result.succeeded} of {result.total} chunks",
        "chunks": result.succeeded,
        "failed": result.failed,
        "documentId": document_id,
        "title": title,
    }


def _serialize_document(document: DocumentMetadata, chunk_count: int) -> dict:
    return {
        "id": document.id,
        "title": document.title,
        "url": document.url,
        "broker_id": document.broker_id,
        "created_at": document.created_at.isoformat() if document.created_at else None,
        "chunk_count": chunk_count,
    }


@router.get("/documents")
async def list_documents(
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    owner_id = await resolve_owner_broker_id(db, broker)
    rows = await documents_repo.list_documents(db, owner_id)
    return {"documents": [_serialize_document(doc, count) for doc, count in rows]}


@router.get("/documents/{document_id}")
async def get_document(
    document_id: str,
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    owner_id = await resolve_owner_broker_id(db, broker)
    document = await documents_repo.get_owned_document(db, document_id, owner_id)
    if document is None:
        raise _error(status.HTTP_404_NOT_FOUND, "DOCUMENT_NOT_FOUND", "Document not found")
    count = await documents_repo.count_chunks(db, document.id)
    return {"document": _serialize_document(document, count)}


@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    broker: Broker = Depends(get_active_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    owner_id = await resolve_owner_broker_id(db, broker)
    document = await documents_repo.get_owned_document(db, document_id, owner_id)
    if document is None:
        # Owner mismatch returns 404 to avoid leaking document existence.
        raise _error(status.HTTP_404_NOT_FOUND, "DOCUMENT_NOT_FOUND", "Document not found")
    report = await delete_documents(db, [document.id])
    if report.get("errors"):
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "DELETE_FAILED", "Failed to delete document")
    await brokers_repo.adjust_document_count(db, owner_id, -1)
    await db.commit()
    return {"success": True, "deleted": report}
