"""
Exception handlers that turn errors into the structured error body.

Every error response is ``{"error": {code, message, requestId, timestamp}}``.
In production, internal error messages are replaced with a generic one.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..core.correlation import get_correlation_id
from ..core.errors import INTERNAL_ERROR_MESSAGE, PipelineError, error_body
from .config import IS_PRODUCTION

logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
}


def request_id_for(request: Request) -> str | None:
    return getattr(request.state, "request_id", None) or get_correlation_id()


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_body(code, message, request_id_for(request)),
        headers=headers,
    )


def internal_error_response(request: Request, error: BaseException) -> JSONResponse:
    message = INTERNAL_ERROR_MESSAGE if IS_PRODUCTION else (str(error) or INTERNAL_ERROR_MESSAGE)
    return error_response(request, 500, "INTERNAL_ERROR", message)


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code} while handling {request.method} {request.url.path}: {exc.message}")
    message = exc.message
    if IS_PRODUCTION and exc.code == "INTERNAL_ERROR":
        message = INTERNAL_ERROR_MESSAGE
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return error_response(request, exc.status_code, exc.code, message, headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    message = "; ".join(parts) or "Request validation failed"
    return error_response(request, 400, "VALIDATION_ERROR", message)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    if exc.status_code == 405:
        message = f"Method {request.method} not allowed"
    elif exc.status_code == 404 and exc.detail == "Not Found":
        message = f"Route {request.url.path} not found"
    else:
        message = str(exc.detail)
    return error_response(request, exc.status_code, code, message, getattr(exc, "headers", None))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
