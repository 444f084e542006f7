from __future__ import annotations


class GatewayError(Exception):
    """Base error for plumbgate."""


class Unauthenticated(GatewayError):
    """Missing, malformed, invalid or expired credential."""


class AmbiguousTenant(GatewayError):
    """Principal belongs to several tenants and none was selected."""


class NoTenantContext(GatewayError):
    """Principal has no usable tenant membership for this request."""


class PermissionDenied(GatewayError):
    """Role lacks the capability for the requested operation."""

    def __init__(self, operation: str, reason: str | None = None) -> None:
        super().__init__(f"Permission denied for {operation}")
        self.operation = operation
        self.reason = reason


class InvalidSignature(GatewayError):
    """Webhook signature missing or mismatched; never retried."""


class TransientStoreError(GatewayError):
    """Storage or identity provider timed out or was unreachable; safe to retry."""


class RateLimited(GatewayError):
    """Caller exceeded its request budget."""

    def __init__(self, retry_after_ms: int, scope: str) -> None:
        super().__init__(f"Rate limit exceeded for {scope}")
        self.retry_after_ms = retry_after_ms
        self.scope = scope


class InvalidQueryError(GatewayError):
    """Unknown entity type or column in a scoped data request."""


class WebhookPayloadError(GatewayError):
    """Webhook body is not a usable event envelope."""


class PermanentWebhookError(GatewayError):
    """Webhook effect failed in a way retries cannot fix."""


class WebhookStateError(GatewayError):
    """Webhook event is not in a state that allows the requested transition."""


class ConflictError(GatewayError):
    """Write collides with an existing record, such as a duplicate invoice number."""
