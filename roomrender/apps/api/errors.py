from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from roomrender.apps.api.response import error_response
from roomrender.core.errors import (
    CatalogError,
    InputValidationError,
    InvalidTransitionError,
    NotFoundError,
    ProviderConfigError,
    ProviderError,
    QuotaExceededError,
    RoomRenderError,
    StorageError,
)
from roomrender.services.quota import quota_error_detail, quota_headers


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "QUOTA_EXCEEDED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors map to (status, code); first match in order wins.
_DOMAIN_ERROR_MAP: tuple[tuple[type[RoomRenderError], int, str], ...] = (
    (InputValidationError, 422, "VALIDATION_ERROR"),
    (NotFoundError, 404, "NOT_FOUND"),
    (InvalidTransitionError, 409, "INVALID_TRANSITION"),
    (ProviderConfigError, 503, "PROVIDER_NOT_CONFIGURED"),
    (ProviderError, 502, "PROVIDER_ERROR"),
    (StorageError, 502, "STORAGE_ERROR"),
    (CatalogError, 502, "CATALOG_ERROR"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Ensure router-level 404/405 responses share the error envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def quota_exceeded_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
    # Rate-limit response distinct from generic failures, with usage headers.
    detail = quota_error_detail(exc.result)
    code, message, details = _split_detail(detail, 429)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=429, headers=quota_headers(exc.result))


async def domain_exception_handler(request: Request, exc: RoomRenderError) -> JSONResponse:
    for error_type, status_code, code in _DOMAIN_ERROR_MAP:
        if isinstance(exc, error_type):
            if isinstance(exc, ProviderError):
                code = exc.code
            if status_code >= 500:
                logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
            payload = error_response(request=request, code=code, message=str(exc) or code)
            return JSONResponse(content=payload, status_code=status_code)
    return await unhandled_exception_handler(request, exc)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
