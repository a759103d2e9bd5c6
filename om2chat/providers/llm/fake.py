from __future__ import annotations

from typing import AsyncIterator


class FakeLLMProvider:
    def __init__(self, response: str = "This is a fake response.") -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response

    async def open_stream(
        self, messages: list[dict], *, model: str | None = None
    ) -> AsyncIterator[str]:
        # Ignore messages to avoid variability; yield word tokens for streaming tests.
        _ = messages, model
        return self._tokens()

    async def _tokens(self) -> AsyncIterator[str]:
        for token in self._response.split():
            yield f"{token} "

    async def complete(
        self, messages: list[dict], *, model: str | None = None, max_tokens: int | None = None
    ) -> str:
        _ = messages, model, max_tokens
        return self._response

    async def aclose(self) -> None:
        return None
