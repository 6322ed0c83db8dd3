from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ghpolicies.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from ghpolicies.apps.api.response import API_VERSION
from ghpolicies.apps.api.routes.dashboard import router as dashboard_router
from ghpolicies.apps.api.routes.health import router as health_router
from ghpolicies.apps.api.routes.ops import router as ops_router
from ghpolicies.apps.api.routes.scans import router as scans_router
from ghpolicies.apps.api.routes.webhooks import router as webhooks_router
from ghpolicies.core.errors import GhPoliciesError
from ghpolicies.core.logging import configure_logging
from ghpolicies.services.jobs import wait_for_inline_jobs
from ghpolicies.services.runtime import get_github_client


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    # Let inline jobs finish before the shared HTTP client goes away.
    await wait_for_inline_jobs()
    await get_github_client().aclose()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="GitHub Policies API", lifespan=_lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(GhPoliciesError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(scans_router, prefix=f"/{API_VERSION}")
    app.include_router(dashboard_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    # GitHub is configured with a fixed, unversioned delivery URL.
    app.include_router(webhooks_router)
    return app


app = create_app()
