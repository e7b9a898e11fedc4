from __future__ import annotations

from typing import Any

from roomrender.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    404: _response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Shop not found"),
    ),
    409: _response(
        "Conflict",
        _error_example(code="INVALID_TRANSITION", message="Cannot transition from preparing to pending"),
    ),
    422: _response(
        "Validation error",
        _error_example(code="VALIDATION_ERROR", message="Product asset is not ready"),
    ),
    429: _response(
        "Quota exceeded",
        _error_example(
            code="QUOTA_EXCEEDED",
            message="Daily render quota exceeded",
            details={"operation": "render", "period": "day", "limit": 100, "used": 100, "remaining": 0},
        ),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    502: _response(
        "Upstream failure",
        _error_example(code="STORAGE_ERROR", message="Upload failed for rooms/..."),
    ),
}

CRON_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid cron secret"),
    ),
    500: DEFAULT_ERROR_RESPONSES[500],
}
