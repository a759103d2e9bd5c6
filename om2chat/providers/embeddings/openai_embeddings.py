from __future__ import annotations

import logging

import httpx

from om2chat.core.config import EMBED_DIM, get_settings
from om2chat.core.errors import EmbeddingError, ProviderConfigError


logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.openai_timeout_s)
        return self._client

    async def embed(self, text: str) -> list[float]:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for embeddings")

        payload = {"input": text, "model": self._settings.openai_embedding_model}
        headers = {"Authorization": f"Bearer {api_key}"}
        try:
            response = await self._get_client().post(
                f"{self._settings.openai_base_url}/embeddings",
                json=payload,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise EmbeddingError("Embedding request failed") from exc

        if response.status_code >= 400:
            logger.warning("embedding_request_failed status=%s", response.status_code)
            raise EmbeddingError(f"Embedding API error: {response.status_code}")

        try:
            vector = response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise EmbeddingError("Embedding response missing data") from exc
        if len(vector) != EMBED_DIM:
            raise EmbeddingError("embedding dimension mismatch")
        return [float(v) for v in vector]

    async def aclose(self) -> None:
        # Only close clients this provider created itself.
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
