from __future__ import annotations

import json

import pytest

from om2chat.core.errors import ProviderError
from om2chat.providers.llm.openai_chat import parse_sse_delta
from om2chat.services.chat import extract_user_text, is_document_chat_id, reframe_stream


def _frames(raw: list[str]) -> list[dict | str]:
    parsed: list[dict | str] = []
    for frame in raw:
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        body = frame[len("data: "):-2]
        parsed.append(body if body == "[DONE]" else json.loads(body))
    return parsed


async def _deltas(*parts: str, fail: bool = False):
    for part in parts:
        yield part
    if fail:
        raise ProviderError("upstream dropped")


def test_parse_sse_delta() -> None:
    line = 'data: {"choices":[{"delta":{"content":"Hel"}}]}'
    assert parse_sse_delta(line) == "Hel"
    assert parse_sse_delta("data: [DONE]") is None
    assert parse_sse_delta(": keepalive") is None
    assert parse_sse_delta('data: {"choices":[{"delta":{}}]}') is None
    assert parse_sse_delta("data: {not json") is None


def test_extract_user_text_joins_text_parts() -> None:
    message = {
        "parts": [
            {"type": "text", "text": "What is the"},
            {"type": "file", "url": "x"},
            {"type": "text", "text": "cap rate?"},
        ]
    }
    assert extract_user_text(message) == "What is the\ncap rate?"
    assert extract_user_text(None) == ""
    assert extract_user_text({"parts": []}) == ""


def test_is_document_chat_id() -> None:
    assert is_document_chat_id("3f2b8c1e-8d4a-4c55-9f0e-2b1a7d6c5e4f")
    assert not is_document_chat_id("chat-123")
    assert not is_document_chat_id(None)
    assert not is_document_chat_id(123)
    assert not is_document_chat_id({"id": "3f2b8c1e-8d4a-4c55-9f0e-2b1a7d6c5e4f"})


@pytest.mark.asyncio
async def test_reframe_stream_emits_step_frames() -> None:
    collected: list[str] = []
    raw = [frame async for frame in reframe_stream(_deltas("Hi ", "there"), message_id="msg_1", collected=collected)]
    frames = _frames(raw)

    assert frames[0] == {"type": "start-step"}
    assert frames[1] == {"type": "text-start", "id": "msg_1"}
    assert frames[2] == {"type": "text-delta", "id": "msg_1", "delta": "Hi "}
    assert frames[3] == {"type": "text-delta", "id": "msg_1", "delta": "there"}
    assert frames[4:] == [
        {"type": "text-end", "id": "msg_1"},
        {"type": "finish-step"},
        {"type": "finish"},
        "[DONE]",
    ]
    assert collected == ["Hi ", "there"]


@pytest.mark.asyncio
async def test_reframe_stream_emits_error_frame_on_upstream_failure() -> None:
    collected: list[str] = []
    raw: list[str] = []
    with pytest.raises(ProviderError):
        async for frame in reframe_stream(_deltas("partial", fail=True), message_id="m", collected=collected):
            raw.append(frame)
    frames = _frames(raw)

    assert frames[-2]["type"] == "error"
    assert frames[-1] == "[DONE]"
    assert collected == ["partial"]
