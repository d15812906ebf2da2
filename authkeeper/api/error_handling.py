from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from authkeeper.api.schemas import Envelope, ErrorBody
from authkeeper.logging import get_logger
from authkeeper.service.errors import (
    AuthenticationError,
    RateLimitedError,
    ServiceError,
)

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    502: "identity_exchange_failed",
    503: "store_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def unauthorized_response() -> JSONResponse:
    """The single response every failed credential check produces."""
    return _error_response(401, AuthenticationError.public_message, code="unauthorized")


def rate_limited_response(exc: RateLimitedError) -> JSONResponse:
    return _error_response(
        429,
        exc.message,
        {"retry_after": exc.retry_after},
        code="rate_limited",
        headers={"Retry-After": str(exc.retry_after)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope handlers; auth failures never reveal which check failed."""

    @app.exception_handler(RateLimitedError)
    async def handle_rate_limited(request: Request, exc: RateLimitedError):
        logger.warning(
            "rate_limited_response",
            path=request.url.path,
            method=request.method,
            retry_after=exc.retry_after,
        )
        return rate_limited_response(exc)

    @app.exception_handler(AuthenticationError)
    async def handle_authentication_error(request: Request, exc: AuthenticationError):
        logger.warning(
            "authentication_rejected",
            path=request.url.path,
            method=request.method,
            reason=exc.reason,
            error_type=type(exc).__name__,
        )
        return unauthorized_response()

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
        )
        if exc.status_code >= 500:
            # Internal details stay in the log
            return _error_response(exc.status_code, "internal server error", code=exc.error_code)
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_error", path=request.url.path, method=request.method
        )
        return _error_response(400, "invalid request", code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Envelope-shaped detail from _http_error() passes through unchanged
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            return _error_response(
                exc.status_code,
                error_obj.get("message", "http error"),
                error_obj.get("details"),
                code=error_obj.get("code"),
                headers=exc.headers,
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
