from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from om2chat.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from om2chat.apps.api.response import API_VERSION
from om2chat.apps.api.routes.admin import router as admin_router
from om2chat.apps.api.routes.analytics import router as analytics_router
from om2chat.apps.api.routes.auth import router as auth_router
from om2chat.apps.api.routes.broker import router as broker_router
from om2chat.apps.api.routes.chat import router as chat_router
from om2chat.apps.api.routes.documents import router as documents_router
from om2chat.apps.api.routes.error_log import router as error_log_router
from om2chat.apps.api.routes.health import router as health_router
from om2chat.apps.api.routes.profile import router as profile_router
from om2chat.apps.api.routes.public_chat import router as public_chat_router
from om2chat.apps.api.routes.public_links import router as public_links_router
from om2chat.apps.api.routes.stripe import router as stripe_router
from om2chat.apps.api.routes.team import router as team_router
from om2chat.apps.api.routes.webhooks import router as webhooks_router
from om2chat.core.config import get_settings
from om2chat.core.logging import configure_logging


logger = logging.getLogger(__name__)

_API_PREFIX = "/api"


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router, prefix=_API_PREFIX)
    app.include_router(auth_router, prefix=_API_PREFIX)
    app.include_router(profile_router, prefix=_API_PREFIX)
    # Broker document management and ingestion.
    app.include_router(documents_router, prefix=_API_PREFIX)
    app.include_router(chat_router, prefix=_API_PREFIX)
    # Client-facing surfaces reached through shared links.
    app.include_router(public_links_router, prefix=_API_PREFIX)
    app.include_router(public_chat_router, prefix=_API_PREFIX)
    app.include_router(analytics_router, prefix=_API_PREFIX)
    app.include_router(broker_router, prefix=_API_PREFIX)
    app.include_router(team_router, prefix=_API_PREFIX)
    # Billing: Stripe events in, cancellations out.
    app.include_router(webhooks_router, prefix=_API_PREFIX)
    app.include_router(stripe_router, prefix=_API_PREFIX)
    app.include_router(error_log_router, prefix=_API_PREFIX)
    app.include_router(admin_router, prefix=_API_PREFIX)

    def custom_openapi() -> dict:
        # Advertise both session transports in the schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=settings.app_name, version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        security_schemes["SessionCookie"] = {
            "type": "apiKey",
            "in": "cookie",
            "name": settings.auth_cookie_name,
        }
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
