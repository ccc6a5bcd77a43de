from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from flashdeck.api.schemas import ErrorBody, ErrorEnvelope
from flashdeck.logging import get_logger
from flashdeck.service.errors import RateLimitedError, ServiceError

logger = get_logger(__name__)

# Codes for errors raised by the framework rather than by our own flows
_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_SERVER_ERROR",
}

_GENERIC_SERVER_MESSAGE = "An unexpected error occurred"


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_SERVER_ERROR")


def error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: str | None = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render the ``{"error": {code, message, details?}}`` envelope."""
    error_body = ErrorBody(code=code or _error_code_for_status(status_code), message=message, details=details)
    return JSONResponse(
        status_code=status_code,
        content=ErrorEnvelope(error=error_body).to_content(),
        headers=headers,
    )


def _validation_details(exc: RequestValidationError) -> Dict[str, List[str]]:
    details: Dict[str, List[str]] = {}
    for error in exc.errors():
        # Drop the leading "body"/"query" segment so keys match request field names
        loc = [str(part) for part in error.get("loc", ())[1:]] or ["body"]
        message = str(error.get("msg", "invalid value")).removeprefix("Value error, ")
        details.setdefault(".".join(loc), []).append(message)
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install the single mapping from typed errors to HTTP responses."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        # 5xx detail stays in the logs
        details = None if exc.status_code >= 500 else exc.detail
        return error_response(exc.status_code, exc.message, details, code=exc.error_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=sorted(details),
        )
        return error_response(400, "Invalid request data", details, code="VALIDATION_ERROR")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
            message = _GENERIC_SERVER_MESSAGE
        return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        return unhandled_error_response(request, exc)


def unhandled_error_response(request: Request, exc: Exception) -> JSONResponse:
    """Log an unexpected exception and render the generic 500 envelope.

    Also called from the http middlewares, which see the exception before
    Starlette's outermost error handler and can still decorate the response.
    """
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return error_response(500, _GENERIC_SERVER_MESSAGE, code="INTERNAL_SERVER_ERROR")
