from __future__ import annotations

import os
import tempfile

# The engine is built at import time, so the test database must be chosen first.
_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="om2chat-tests-"), "om2chat.db")
os.environ["DATABASE_URL"] = os.environ.get("OM2CHAT_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_DB_PATH}")
os.environ["LLM_PROVIDER"] = "fake"
os.environ["EMBEDDING_PROVIDER"] = "fake"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("AUTH_SECRET", "test-secret-with-enough-length-for-hs256")

import pytest  # noqa: E402

from om2chat.apps.api import rate_limit  # noqa: E402
from om2chat.core.config import get_settings  # noqa: E402
from om2chat.domain.models import Base  # noqa: E402
from om2chat.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Clear settings cache between tests to avoid leaking env overrides.
    yield
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
