from __future__ import annotations

import asyncio
import io
import logging

import pdfplumber

from om2chat.core.errors import PdfExtractionError


logger = logging.getLogger(__name__)


def _extract_sync(data: bytes) -> str:
    parts: list[str] = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            page_text = page.extract_text() or ""
            if page_text.strip():
                parts.append(page_text)
    return "\n".join(parts)


async def extract_pdf_text(data: bytes) -> str:
    # pdfplumber is CPU bound and synchronous; keep it off the event loop.
    try:
        return await asyncio.to_thread(_extract_sync, data)
    except Exception as exc:  # noqa: BLE001 - pdfminer raises a wide range of parser errors
        logger.warning("pdf_extraction_failed bytes=%s", len(data), exc_info=exc)
        raise PdfExtractionError("Failed to parse PDF") from exc
