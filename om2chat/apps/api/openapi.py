from __future__ import annotations

from typing import Any

from om2chat.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _entry(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _entry("Bad request", "BAD_REQUEST", "Bad request"),
    401: _entry("Unauthorized", "AUTH_UNAUTHORIZED", "Authentication required"),
    402: _entry("Payment required", "TRIAL_EXPIRED", "Free trial has ended"),
    403: _entry("Forbidden", "AUTH_FORBIDDEN", "Not allowed"),
    404: _entry("Not found", "NOT_FOUND", "Resource not found"),
    422: _entry("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    429: _entry(
        "Rate limited",
        "RATE_LIMITED",
        "Too many requests. Please try again later.",
        details={"bucket": "chat", "retry_after": 42},
    ),
    500: _entry("Internal server error", "INTERNAL_ERROR", "Internal server error"),
}
