from __future__ import annotations

from om2chat.core.config import get_settings
from om2chat.providers.llm.fake import FakeLLMProvider
from om2chat.providers.llm.openai_chat import OpenAIChatProvider


def get_llm_provider():
    settings = get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeLLMProvider()
    return OpenAIChatProvider()
