from __future__ import annotations

import json

import httpx
import pytest

from om2chat.core.config import EMBED_DIM, get_settings
from om2chat.core.errors import EmbeddingError, ProviderConfigError, ProviderError
from om2chat.providers.embeddings.openai_embeddings import OpenAIEmbeddingProvider
from om2chat.providers.llm.openai_chat import OpenAIChatProvider


def _sse_body(*deltas: str) -> bytes:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": delta}}]}) + "\n\n" for delta in deltas
    ]
    lines.append(": keepalive\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


@pytest.fixture
def openai_key(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_chat_stream_yields_deltas(openai_key) -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, content=_sse_body("Cap ", "rate ", "is 6%"))

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OpenAIChatProvider(client=client)
    deltas = await provider.open_stream([{"role": "user", "content": "cap rate?"}])
    text = "".join([delta async for delta in deltas])
    await client.aclose()

    assert text == "Cap rate is 6%"
    assert seen["body"]["stream"] is True
    assert seen["body"]["model"] == "gpt-4o"
    assert seen["auth"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_chat_stream_upstream_error_raises_before_streaming(openai_key) -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401, json={})))
    provider = OpenAIChatProvider(client=client)
    with pytest.raises(ProviderError) as exc_info:
        await provider.open_stream([{"role": "user", "content": "hi"}])
    await client.aclose()
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_chat_complete_sends_public_model_options(openai_key) -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "Asking price is $18.5M."}}]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OpenAIChatProvider(client=client)
    answer = await provider.complete([{"role": "user", "content": "price?"}], model="gpt-4o-mini", max_tokens=1000)
    await client.aclose()

    assert answer == "Asking price is $18.5M."
    assert seen["body"]["model"] == "gpt-4o-mini"
    assert seen["body"]["max_tokens"] == 1000


@pytest.mark.asyncio
async def test_chat_requires_api_key(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    provider = OpenAIChatProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))))
    with pytest.raises(ProviderConfigError):
        await provider.complete([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_embedding_dimension_is_checked(openai_key) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        size = EMBED_DIM if b"good" in request.content else 3
        return httpx.Response(200, json={"data": [{"embedding": [0.1] * size}]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OpenAIEmbeddingProvider(client=client)
    assert len(await provider.embed("good text")) == EMBED_DIM
    with pytest.raises(EmbeddingError):
        await provider.embed("short")
    await client.aclose()
