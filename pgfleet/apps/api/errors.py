from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pgfleet.apps.api.response import error_response
from pgfleet.core.errors import NodeCommandError, NodeConnectionError


logger = logging.getLogger(__name__)

# Fallback codes for exceptions raised without a {"code", "message"} detail.
_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    502: "NODE_UNAVAILABLE",
    503: "SERVICE_UNAVAILABLE",
}


def _envelope(
    request: Request,
    status_code: int,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def describe_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    """Turn an ``HTTPException.detail`` into ``(code, message, details)``.

    Services raise ``detail={"code": ..., "message": ...}``; any extra keys are
    passed through as ``details``. Plain string details (framework-raised 404s
    and 405s) get a code derived from the status.
    """
    fallback = _STATUS_CODES.get(status_code, "INTERNAL_ERROR" if status_code >= 500 else "REQUEST_FAILED")
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
        return str(detail.get("code") or fallback), str(detail.get("message") or "Request failed"), extra or None
    if isinstance(detail, str) and detail:
        return fallback, detail, None
    return fallback, "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # FastAPI's HTTPException subclasses Starlette's, so routing errors and service errors land here.
    code, message, details = describe_detail(exc.detail, exc.status_code)
    return _envelope(request, exc.status_code, code=code, message=message, details=details, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def node_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # A node failure that escapes a service is a dependency error, not a 500.
    code = "NODE_COMMAND_FAILED" if isinstance(exc, NodeCommandError) else "NODE_UNAVAILABLE"
    logger.warning("node_error_unhandled path=%s code=%s", request.url.path, code, exc_info=exc)
    return _envelope(request, 502, code=code, message=str(exc) or "Node request failed")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, code="INTERNAL_ERROR", message="Internal server error")


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    for exc_class in (NodeConnectionError, NodeCommandError):
        app.add_exception_handler(exc_class, node_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
