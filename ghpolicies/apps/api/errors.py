from __future__ import annotations

import logging
from typing import Any, Mapping

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ghpolicies.apps.api.response import error_response, is_versioned_request
from ghpolicies.core.errors import (
    ConfigurationNotFoundError,
    GhPoliciesError,
    GitHubAuthenticationError,
    GitHubRateLimitedError,
    InvalidConfigurationError,
)


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[GhPoliciesError], int, str], ...] = (
    (ConfigurationNotFoundError, 503, "CONFIGURATION_NOT_FOUND"),
    (InvalidConfigurationError, 503, "CONFIGURATION_INVALID"),
    (GitHubAuthenticationError, 502, "GITHUB_AUTH_FAILED"),
    (GitHubRateLimitedError, 503, "GITHUB_RATE_LIMITED"),
)


def _respond(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    plain_detail: Any,
    details: dict[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    # Unversioned routes (health, webhook ingress) keep FastAPI's plain {"detail": ...} shape.
    if is_versioned_request(request):
        content = error_response(request=request, code=code, message=message, details=details)
    else:
        content = {"detail": plain_detail}
    return JSONResponse(content=content, status_code=status_code, headers=dict(headers or {}))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    message = "Request failed"
    details = None
    if isinstance(exc.detail, dict):
        code = str(exc.detail.get("code") or code)
        message = str(exc.detail.get("message") or message)
        details = {key: value for key, value in exc.detail.items() if key not in {"code", "message"}} or None
    elif isinstance(exc.detail, str):
        message = exc.detail
    return _respond(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        plain_detail=exc.detail,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    return _respond(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        plain_detail=errors,
        details={"errors": errors},
    )


async def domain_exception_handler(request: Request, exc: GhPoliciesError) -> JSONResponse:
    # Configuration and GitHub failures are operator problems, not client errors.
    status_code, code = 502, "UPSTREAM_ERROR"
    for error_type, mapped_status, mapped_code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            status_code, code = mapped_status, mapped_code
            break
    logger.warning("api_domain_error path=%s code=%s error=%s", request.url.path, code, exc)
    return _respond(request, status_code=status_code, code=code, message=str(exc), plain_detail=str(exc))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to callers; the log keeps them.
    logger.exception("api_unhandled_error path=%s", request.url.path)
    return _respond(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Internal server error",
        plain_detail="Internal Server Error",
    )
