from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ownerportal.apps.api.errors import (
    http_exception_handler,
    owner_portal_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from ownerportal.apps.api.routes.access import router as access_router
from ownerportal.apps.api.routes.admin_portal import router as admin_portal_router
from ownerportal.apps.api.routes.health import router as health_router
from ownerportal.core.errors import OwnerPortalError
from ownerportal.core.logging import configure_logging
from ownerportal.services.audit import drain_pending_audits


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Give scheduled audit writes a chance to land before the loop closes.
    await drain_pending_audits()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Owner Portal API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(OwnerPortalError)
    async def _owner_portal_exception_handler(request: Request, exc: OwnerPortalError):
        return await owner_portal_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(admin_portal_router)
    app.include_router(access_router)
    app.include_router(health_router)
    return app


app = create_app()
