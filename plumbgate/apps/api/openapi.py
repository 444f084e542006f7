from __future__ import annotations

from typing import Any

from plumbgate.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _documented(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


# Shared by every authenticated router.
DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _documented("Invalid query", "INVALID_QUERY", "Unknown field for invoices: colour"),
    401: _documented("Unauthenticated", "AUTH_UNAUTHORIZED", "Missing or invalid credentials"),
    403: _documented(
        "Forbidden",
        "AUTH_FORBIDDEN",
        "Insufficient permissions for this operation",
        details={"operation": "invoices:delete"},
    ),
    404: _documented("Not found", "NOT_FOUND", "Record not found"),
    409: _documented("Conflict", "CONFLICT", "Record conflicts with an existing record"),
    429: _documented(
        "Tenant over its plan budget",
        "RATE_LIMITED",
        "Rate limit exceeded",
        details={"scope": "tenant", "retry_after_ms": 800},
    ),
    503: _documented("Temporarily unavailable", "SERVICE_UNAVAILABLE", "Service temporarily unavailable, retry later"),
}

WEBHOOK_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _documented("Malformed event", "WEBHOOK_PAYLOAD_INVALID", "Webhook body has no usable event id"),
    401: _documented("Bad signature", "WEBHOOK_SIGNATURE_INVALID", "Invalid webhook signature"),
    429: _documented(
        "Rate limited",
        "RATE_LIMITED",
        "Rate limit exceeded",
        details={"scope": "webhook", "retry_after_ms": 1200},
    ),
    500: _documented("Processing failed, redeliver later", "WEBHOOK_RETRY_LATER", "Webhook not processed"),
}
