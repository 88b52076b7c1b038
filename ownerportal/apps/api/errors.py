from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ownerportal.core.errors import OwnerPortalError


logger = logging.getLogger(__name__)


def error_payload(error: str, detail: Any = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": error}
    if detail is not None:
        payload["detail"] = detail
    return payload


async def owner_portal_exception_handler(request: Request, exc: OwnerPortalError) -> JSONResponse:
    # Domain errors carry their own status and label.
    if exc.status_code >= 500:
        logger.warning(
            "request_failed path=%s status=%s error=%s", request.url.path, exc.status_code, exc.error
        )
    return JSONResponse(content=error_payload(exc.error, exc.detail), status_code=exc.status_code)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else None
    return JSONResponse(
        content=error_payload(detail or "Request failed"),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Query/body validation surfaces as 400 with the first field error as detail.
    errors = exc.errors()
    detail = None
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        detail = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return JSONResponse(content=error_payload("Invalid request", detail), status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.error("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(content=error_payload("Internal server error"), status_code=500)
