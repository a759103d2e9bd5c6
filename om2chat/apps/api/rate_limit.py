from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
import time
from typing import Any, Callable, Protocol
from uuid import uuid4

import httpx
from fastapi import HTTPException, Request, Response, status
from redis.asyncio import Redis

from om2chat.core.config import get_settings
from om2chat.core.errors import RateLimitBackendError
from om2chat.services.entitlements import AUTH_MAX_ATTEMPTS, AUTH_WINDOW_MS


logger = logging.getLogger(__name__)

BUCKET_CHAT = "chat"
BUCKET_UPLOAD = "upload"
BUCKET_API = "api"
BUCKET_AUTH = "auth"

_DAY_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class RateLimitDecision:
    # Shared result contract for every backend.
    success: bool
    limit: int
    remaining: int
    reset_time_ms: int
    retry_after_s: int | None = None
    degraded: bool = False


@dataclass(frozen=True)
class DailyDecision:
    allowed: bool
    count: int
    limit: int


class RateLimitBackend(Protocol):
    async def check(self, key: str, *, window_ms: int, max_requests: int) -> RateLimitDecision:
        ...

    async def consume_daily(self, key: str, *, limit: int) -> DailyDecision:
        ...


def _retry_after_s(reset_time_ms: int, now_ms: int) -> int:
    return max(1, int(math.ceil((reset_time_ms - now_ms) / 1000.0)))


class MemoryRateLimitBackend:
    """Per-process sliding window.

    Counters live in this process only, so limits are per instance and reset on
    restart. Used for local development and tests.
    """

    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time
        self._hits: dict[str, deque[int]] = {}
        self._daily: dict[str, tuple[int, float]] = {}

    async def check(self, key: str, *, window_ms: int, max_requests: int) -> RateLimitDecision:
        now_ms = int(self._time_provider() * 1000)
        hits = self._hits.setdefault(key, deque())
        # Drop hits that slid out of the window.
        while hits and hits[0] <= now_ms - window_ms:
            hits.popleft()
        if len(hits) >= max_requests:
            reset_time_ms = hits[0] + window_ms
            return RateLimitDecision(
                success=False,
                limit=max_requests,
                remaining=0,
                reset_time_ms=reset_time_ms,
                retry_after_s=_retry_after_s(reset_time_ms, now_ms),
            )
        hits.append(now_ms)
        return RateLimitDecision(
            success=True,
            limit=max_requests,
            remaining=max_requests - len(hits),
            reset_time_ms=hits[0] + window_ms,
        )

    async def consume_daily(self, key: str, *, limit: int) -> DailyDecision:
        now = self._time_provider()
        count, expires_at = self._daily.get(key, (0, now + _DAY_SECONDS))
        if expires_at <= now:
            count, expires_at = 0, now + _DAY_SECONDS
        if count >= limit:
            return DailyDecision(allowed=False, count=count, limit=limit)
        count += 1
        self._daily[key] = (count, expires_at)
        return DailyDecision(allowed=True, count=count, limit=limit)


# Sorted-set sliding window; members are unique per request so bursts in one ms all count.
_SLIDING_WINDOW_LUA = r"""
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call("ZREMRANGEBYSCORE", key, 0, now_ms - window_ms)
local count = redis.call("ZCARD", key)
if count >= limit then
  local oldest = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
  local reset_ms = now_ms + window_ms
  if oldest[2] then
    reset_ms = tonumber(oldest[2]) + window_ms
  end
  return {0, count, reset_ms}
end
redis.call("ZADD", key, now_ms, member)
redis.call("PEXPIRE", key, window_ms)
local first = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
return {1, count + 1, tonumber(first[2]) + window_ms}
"""

_DAILY_COUNTER_LUA = r"""
local count = tonumber(redis.call("GET", KEYS[1]) or "0")
local limit = tonumber(ARGV[1])
if count >= limit then
  return {0, count}
end
count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("EXPIRE", KEYS[1], tonumber(ARGV[2]))
end
return {1, count}
"""


class _ScriptedBackend:
    """Shared window math for backends that can run the Lua scripts atomically."""

    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time
        self._prefix = get_settings().rl_redis_prefix

    async def _eval(self, script: str, keys: list[str], args: list[Any]) -> list[Any]:
        raise NotImplementedError

    async def check(self, key: str, *, window_ms: int, max_requests: int) -> RateLimitDecision:
        now_ms = int(self._time_provider() * 1000)
        result = await self._eval(
            _SLIDING_WINDOW_LUA,
            [f"{self._prefix}:{key}"],
            [now_ms, window_ms, max_requests, f"{now_ms}-{uuid4().hex}"],
        )
        try:
            allowed = int(result[0]) == 1
            count = int(result[1])
            reset_time_ms = int(float(result[2]))
        except (IndexError, TypeError, ValueError) as exc:
            raise RateLimitBackendError("Unexpected rate limit script result") from exc
        if not allowed:
            return RateLimitDecision(
                success=False,
                limit=max_requests,
                remaining=0,
                reset_time_ms=reset_time_ms,
                retry_after_s=_retry_after_s(reset_time_ms, now_ms),
            )
        return RateLimitDecision(
            success=True,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_time_ms=reset_time_ms,
        )

    async def consume_daily(self, key: str, *, limit: int) -> DailyDecision:
        result = await self._eval(
            _DAILY_COUNTER_LUA,
            [f"{self._prefix}:{key}"],
            [limit, _DAY_SECONDS],
        )
        try:
            return DailyDecision(allowed=int(result[0]) == 1, count=int(result[1]), limit=limit)
        except (IndexError, TypeError, ValueError) as exc:
            raise RateLimitBackendError("Unexpected daily counter result") from exc


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


class RedisRateLimitBackend(_ScriptedBackend):
    async def _eval(self, script: str, keys: list[str], args: list[Any]) -> list[Any]:
        redis = await _get_redis()
        return await redis.eval(script, len(keys), *keys, *args)


class KvRestRateLimitBackend(_ScriptedBackend):
    """Upstash-compatible REST backend; commands are posted as JSON arrays."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(time_provider=time_provider)
        settings = get_settings()
        self._url = (settings.kv_rest_api_url or "").rstrip("/")
        self._token = settings.kv_rest_api_token or ""
        self._client = client

    async def _eval(self, script: str, keys: list[str], args: list[Any]) -> list[Any]:
        command = ["EVAL", script, str(len(keys)), *keys, *[str(arg) for arg in args]]
        headers = {"Authorization": f"Bearer {self._token}"}
        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=command, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=5.0) as client:
                    response = await client.post(self._url, json=command, headers=headers)
        except httpx.HTTPError as exc:
            raise RateLimitBackendError("KV request failed") from exc
        if response.status_code >= 400:
            raise RateLimitBackendError(f"KV error: {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise RateLimitBackendError("KV returned invalid JSON") from exc
        if "error" in payload:
            raise RateLimitBackendError(str(payload["error"]))
        return payload.get("result") or []


_backend: RateLimitBackend | None = None


def _select_backend() -> RateLimitBackend:
    settings = get_settings()
    choice = (settings.rate_limit_backend or "auto").lower()
    if choice == "memory":
        return MemoryRateLimitBackend()
    if choice == "redis":
        return RedisRateLimitBackend()
    if choice == "kv":
        return KvRestRateLimitBackend()
    if settings.kv_rest_api_url and settings.kv_rest_api_token:
        return KvRestRateLimitBackend()
    if settings.redis_url:
        return RedisRateLimitBackend()
    logger.warning("rate_limit_backend=memory limits are per process")
    return MemoryRateLimitBackend()


def get_rate_limit_backend() -> RateLimitBackend:
    # Cache the backend so in-memory windows survive across requests.
    global _backend
    if _backend is None:
        _backend = _select_backend()
    return _backend


def reset_rate_limiter_state() -> None:
    # Reset cached backends and Redis connections for deterministic test setup.
    global _backend, _redis_pool, _redis_loop
    _backend = None
    _redis_pool = None
    _redis_loop = None


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def rate_limit_key(bucket: str, *, window_ms: int, user_id: str | None, ip: str) -> str:
    # Prefer the stable user id; anonymous callers share a key per IP.
    if user_id:
        return f"{bucket}:user:{user_id}:{window_ms}"
    return f"{bucket}:ip:{ip}:{window_ms}"


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": datetime.fromtimestamp(
            decision.reset_time_ms / 1000.0, tz=timezone.utc
        ).isoformat(),
    }
    if decision.degraded:
        headers["X-RateLimit-Status"] = "degraded"
    return headers


def _throttle_exception(*, decision: RateLimitDecision, bucket: str) -> HTTPException:
    # Construct a stable 429 response with retry hints and metadata.
    retry_after_s = decision.retry_after_s or 1
    headers = rate_limit_headers(decision)
    headers["Retry-After"] = str(retry_after_s)
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Too many requests. Please try again later.",
            "bucket": bucket,
            "retry_after": retry_after_s,
        },
        headers=headers,
    )


def _unavailable_exception() -> HTTPException:
    # Return a stable 503 when rate limit storage is unavailable and fail-closed.
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response | None,
    bucket: str,
    max_requests: int,
    window_ms: int,
    user_id: str | None = None,
    key: str | None = None,
) -> RateLimitDecision | None:
    """Count one request against ``bucket`` and raise 429 once the window is full.

    Returns the decision so streaming routes can copy the headers onto their
    own response; returns ``None`` when rate limiting is disabled.
    """
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None

    backend = get_rate_limit_backend()
    limit_key = key or rate_limit_key(
        bucket, window_ms=window_ms, user_id=user_id, ip=client_ip(request)
    )
    try:
        decision = await backend.check(limit_key, window_ms=window_ms, max_requests=max_requests)
    except Exception as exc:  # noqa: BLE001 - guard against Redis/KV connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception() from exc
        logger.warning("rate_limit_degraded path=%s bucket=%s", request.url.path, bucket, exc_info=exc)
        decision = RateLimitDecision(
            success=True,
            limit=max_requests,
            remaining=max_requests,
            reset_time_ms=int(time.time() * 1000) + window_ms,
            degraded=True,
        )

    if not decision.success:
        logger.info("rate_limited path=%s bucket=%s key=%s", request.url.path, bucket, limit_key)
        raise _throttle_exception(decision=decision, bucket=bucket)
    if response is not None:
        for name, value in rate_limit_headers(decision).items():
            response.headers[name] = value
    return decision


async def enforce_auth_rate_limit(request: Request) -> None:
    # Credential endpoints are keyed by IP plus user agent, not by account.
    user_agent = request.headers.get("user-agent", "unknown")
    await enforce_rate_limit(
        request=request,
        response=None,
        bucket=BUCKET_AUTH,
        max_requests=AUTH_MAX_ATTEMPTS,
        window_ms=AUTH_WINDOW_MS,
        key=f"auth:{client_ip(request)}:{user_agent}",
    )


async def enforce_daily_message_limit(*, broker_id: str, limit: int) -> None:
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return
    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    try:
        decision = await get_rate_limit_backend().consume_daily(
            f"daily_messages:{broker_id}:{day}", limit=limit
        )
    except Exception as exc:  # noqa: BLE001 - daily quota is best effort when storage is down
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception() from exc
        logger.warning("daily_limit_degraded broker_id=%s", broker_id, exc_info=exc)
        return
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "DAILY_LIMIT_EXCEEDED",
                "message": "Daily message limit reached",
                "limit": decision.limit,
                "used": decision.count,
            },
        )
