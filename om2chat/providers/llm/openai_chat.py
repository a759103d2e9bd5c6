from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from om2chat.core.config import get_settings
from om2chat.core.errors import ProviderConfigError, ProviderError


logger = logging.getLogger(__name__)


def parse_sse_delta(line: str) -> str | None:
    """Return the text delta carried by one upstream SSE line, if any.

    Lines that are not ``data:`` frames, the ``[DONE]`` sentinel and frames
    without ``choices[0].delta.content`` all yield ``None``.
    """
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data or data == "[DONE]":
        return None
    try:
        payload = json.loads(data)
        content = payload["choices"][0]["delta"].get("content")
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        # Malformed frames are skipped; upstream occasionally sends keepalives.
        return None
    return content or None


class OpenAIChatProvider:
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

    def _headers(self) -> dict[str, str]:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for chat completions")
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    async def open_stream(
        self, messages: list[dict], *, model: str | None = None
    ) -> AsyncIterator[str]:
        # Status is checked before any bytes are relayed so failures surface as a plain 500.
        payload = {
            "model": model or self._settings.openai_chat_model,
            "messages": messages,
            "temperature": self._settings.openai_temperature,
            "stream": True,
        }
        client = self._get_client()
        request = client.build_request(
            "POST",
            f"{self._settings.openai_base_url}/chat/completions",
            json=payload,
            headers=self._headers(),
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise ProviderError("OpenAI request failed") from exc
        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            logger.warning(
                "openai_stream_failed status=%s body=%s",
                response.status_code,
                body[:500].decode("utf-8", "replace"),
            )
            raise ProviderError("OpenAI API error", status_code=response.status_code)
        return self._iter_deltas(response)

    async def _iter_deltas(self, response: httpx.Response) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                delta = parse_sse_delta(line)
                if delta:
                    yield delta
        except httpx.HTTPError as exc:
            raise ProviderError("OpenAI stream interrupted") from exc
        finally:
            await response.aclose()

    async def complete(
        self, messages: list[dict], *, model: str | None = None, max_tokens: int | None = None
    ) -> str:
        payload: dict = {
            "model": model or self._settings.openai_chat_model,
            "messages": messages,
            "temperature": self._settings.openai_temperature,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        try:
            response = await self._get_client().post(
                f"{self._settings.openai_base_url}/chat/completions",
                json=payload,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise ProviderError("OpenAI request failed") from exc
        if response.status_code >= 400:
            logger.warning("openai_completion_failed status=%s", response.status_code)
            raise ProviderError("OpenAI API error", status_code=response.status_code)
        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError("OpenAI response missing content") from exc

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
