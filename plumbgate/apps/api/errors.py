from __future__ import annotations

import logging
import math
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from plumbgate.apps.api.response import error_response
from plumbgate.core.errors import (
    AmbiguousTenant,
    ConflictError,
    GatewayError,
    InvalidQueryError,
    InvalidSignature,
    NoTenantContext,
    PermanentWebhookError,
    PermissionDenied,
    RateLimited,
    TransientStoreError,
    Unauthenticated,
    WebhookPayloadError,
    WebhookStateError,
)
from plumbgate.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Gateway error type -> (status, code, message). A None message echoes the
# exception text, used only where that text is built from client input.
_GATEWAY_ERRORS: dict[type[GatewayError], tuple[int, str, str | None]] = {
    Unauthenticated: (401, "AUTH_UNAUTHORIZED", "Missing or invalid credentials"),
    InvalidSignature: (401, "WEBHOOK_SIGNATURE_INVALID", "Invalid webhook signature"),
    AmbiguousTenant: (403, "TENANT_AMBIGUOUS", "Select a tenant for this request"),
    NoTenantContext: (403, "TENANT_UNAVAILABLE", "No tenant available for this principal"),
    PermissionDenied: (403, "AUTH_FORBIDDEN", "Insufficient permissions for this operation"),
    RateLimited: (429, "RATE_LIMITED", "Rate limit exceeded"),
    InvalidQueryError: (400, "INVALID_QUERY", None),
    WebhookPayloadError: (400, "WEBHOOK_PAYLOAD_INVALID", None),
    WebhookStateError: (409, "WEBHOOK_STATE_CONFLICT", None),
    ConflictError: (409, "CONFLICT", "Record conflicts with an existing record"),
    TransientStoreError: (503, "SERVICE_UNAVAILABLE", "Service temporarily unavailable, retry later"),
    PermanentWebhookError: (500, "INTERNAL_ERROR", "Internal server error"),
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail is either a plain message or {"code", "message", ...}.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _lookup(exc: GatewayError) -> tuple[int, str, str | None]:
    for cls in type(exc).__mro__:
        if cls in _GATEWAY_ERRORS:
            return _GATEWAY_ERRORS[cls]
    return 500, "INTERNAL_ERROR", "Internal server error"


async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
    status_code, code, message = _lookup(exc)
    headers: dict[str, str] = {}
    details: dict[str, Any] | None = None
    if isinstance(exc, Unauthenticated):
        headers["WWW-Authenticate"] = "Bearer"
    elif isinstance(exc, PermissionDenied):
        details = {"operation": exc.operation}
    elif isinstance(exc, RateLimited):
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_ms / 1000)))
        details = {"scope": exc.scope, "retry_after_ms": exc.retry_after_ms}
    elif isinstance(exc, TransientStoreError):
        headers["Retry-After"] = "1"

    if status_code >= 500:
        logger.error("request_failed path=%s error=%s", request.url.path, type(exc).__name__, exc_info=exc)
    else:
        logger.info(
            "request_rejected path=%s status=%s code=%s reason=%s",
            request.url.path,
            status_code,
            code,
            exc,
        )
    payload = error_response(request=request, code=code, message=message or str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers or None)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    # Pydantic error contexts can carry exception objects.
    return JSONResponse(content=jsonable_encoder(payload, custom_encoder={Exception: str}), status_code=422)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # A query without a tenant scope is a server bug; never surface its details.
    logger.error("tenant_predicate_missing path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces and SQL stay in the logs.
    logger.error("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
