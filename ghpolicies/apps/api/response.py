from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


def request_id_for(request: Request) -> str:
    # The middleware stamps every request; handlers that run outside it still get an id.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    path = request.url.path
    return path == f"/{API_VERSION}" or path.startswith(f"/{API_VERSION}/")


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=request_id_for(request)).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    # Only /v1 routes are enveloped; the webhook ingress answers GitHub in plain JSON.
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details)
    return {"error": body.model_dump(exclude_none=True), "meta": _meta(request)}
