"""
Application errors and their HTTP rendering.

Services raise ``AppError`` with a distinguishable code; the handlers
registered by ``register_exception_handlers`` turn them into a uniform JSON
body. Unexpected exceptions are logged with request context and returned as a
generic 500 without leaking detail.
"""

import logging
from enum import Enum
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE_SUBMISSION = "DUPLICATE_SUBMISSION"
    ALREADY_VOTED = "ALREADY_VOTED"
    RATE_LIMITED = "RATE_LIMITED"
    CAPTCHA_REQUIRED = "CAPTCHA_REQUIRED"
    CAPTCHA_FAILED = "CAPTCHA_FAILED"
    CAPTCHA_LOW_SCORE = "CAPTCHA_LOW_SCORE"
    CAPTCHA_UNAVAILABLE = "CAPTCHA_UNAVAILABLE"
    UNAUTHORIZED = "UNAUTHORIZED"
    ADMIN_NOT_CONFIGURED = "ADMIN_NOT_CONFIGURED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(Exception):
    """Operational error carrying an HTTP status and a stable code."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.headers = headers or {}

    @classmethod
    def bad_request(cls, message: str, code: ErrorCode = ErrorCode.VALIDATION_ERROR) -> "AppError":
        return cls(message, 400, code)

    @classmethod
    def unauthorized(cls, message: str = "Unauthorized") -> "AppError":
        return cls(message, 401, ErrorCode.UNAUTHORIZED)

    @classmethod
    def forbidden(cls, message: str, code: ErrorCode) -> "AppError":
        return cls(message, 403, code)

    @classmethod
    def not_found(cls, message: str = "Resource not found") -> "AppError":
        return cls(message, 404, ErrorCode.NOT_FOUND)

    @classmethod
    def conflict(cls, message: str, code: ErrorCode) -> "AppError":
        return cls(message, 409, code)

    @classmethod
    def too_many_requests(
        cls,
        message: str = "Too many requests",
        headers: Optional[Dict[str, str]] = None,
    ) -> "AppError":
        return cls(message, 429, ErrorCode.RATE_LIMITED, headers)

    @classmethod
    def service_unavailable(cls, message: str, code: ErrorCode) -> "AppError":
        return cls(message, 503, code)


def _error_body(message: str, code: str, status_code: int, **extra) -> dict:
    body = {"message": message, "code": code, "statusCode": status_code}
    body.update(extra)
    return {"error": body}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        f"{request.method} {request.url.path} -> {exc.status_code} {exc.code.value}: {exc.message}"
    )
    headers = {**getattr(request.state, "rate_limit_headers", {}), **exc.headers}
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.message, exc.code.value, exc.status_code),
        headers=headers,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=_error_body("Validation error", ErrorCode.VALIDATION_ERROR.value, 400, details=details),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = ErrorCode.NOT_FOUND if exc.status_code == 404 else ErrorCode.INTERNAL_ERROR
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail), code.value, exc.status_code),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content=_error_body("Internal server error", ErrorCode.INTERNAL_ERROR.value, 500),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
