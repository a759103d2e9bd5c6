from __future__ import annotations

from typing import AsyncIterator, Protocol


class LLMProvider(Protocol):
    async def open_stream(
        self, messages: list[dict], *, model: str | None = None
    ) -> AsyncIterator[str]:
        ...

    async def complete(
        self, messages: list[dict], *, model: str | None = None, max_tokens: int | None = None
    ) -> str:
        ...

    async def aclose(self) -> None:
        ...
