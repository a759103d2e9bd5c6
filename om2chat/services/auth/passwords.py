from __future__ import annotations

from functools import lru_cache

import bcrypt

from om2chat.core.config import get_settings


MIN_PASSWORD_LENGTH = 6


def hash_password(plain: str) -> str:
    salt = bcrypt.gensalt(get_settings().bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hashes never authenticate.
        return False


@lru_cache
def _dummy_hash(rounds: int) -> str:
    return bcrypt.hashpw(b"om2chat-dummy-password", bcrypt.gensalt(rounds)).decode("utf-8")


def burn_dummy_compare(plain: str) -> None:
    # Unknown accounts still pay for one bcrypt compare so timing does not reveal them.
    verify_password(plain, _dummy_hash(get_settings().bcrypt_rounds))
