from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    # Stable machine-readable code plus a generic, client-safe message.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The middleware normally assigns one; exception paths may run before it.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": jsonable_encoder(data), "meta": _meta(request)}


def success_json(*, request: Request, data: Any, status_code: int = 200) -> JSONResponse:
    # Explicit status codes (201, webhook replays) need a concrete response object.
    return JSONResponse(content=success_response(request=request, data=data), status_code=status_code)


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
