from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from plumbgate.apps.api.errors import (
    gateway_exception_handler,
    http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from plumbgate.apps.api.response import API_VERSION
from plumbgate.apps.api.routes.audit import router as audit_router
from plumbgate.apps.api.routes.health import router as health_router
from plumbgate.apps.api.routes.me import router as me_router
from plumbgate.apps.api.routes.records import router as records_router
from plumbgate.apps.api.routes.webhooks import router as webhooks_router
from plumbgate.core.config import get_settings
from plumbgate.core.errors import GatewayError
from plumbgate.core.logging import configure_logging
from plumbgate.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Keep a caller-supplied request id when present.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s tenant_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
            request_id,
            getattr(request.state, "tenant_id", None),
        )
        return response

    app.add_exception_handler(GatewayError, gateway_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (health_router, me_router, records_router, audit_router, webhooks_router):
        app.include_router(router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Mark every non-public route as bearer-protected in the schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=settings.app_name, version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        public_prefixes = tuple(settings.public_prefixes) + (f"/{API_VERSION}/webhooks/{{provider}}",)
        for path, operations in schema.get("paths", {}).items():
            if path.startswith(public_prefixes) and not path.endswith("/retry"):
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
