from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskgate.api.schemas import ErrorEnvelope
from taskgate.logging import get_logger, sanitize_error_message
from taskgate.service.errors import RateLimitedError, ServiceError
from taskgate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "INSUFFICIENT_PERMISSIONS",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_ERROR",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "INTERNAL_ERROR"
    return _STATUS_TO_CODE.get(status_code, "HTTP_ERROR")


def _error_response(
    status_code: int,
    message: str,
    *,
    code: str | None = None,
    details: dict | list | None = None,
    errors: list | None = None,
    retry_after: int | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        message=message,
        code=code or _error_code_for_status(status_code),
        details=details or None,
        errors=errors,
        retry_after=retry_after,
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


def _field_name(loc) -> str:
    # ("body", "firstName") -> "firstName"; query/path/header keep their location
    parts = [str(p) for p in loc if p != "body"]
    return ".".join(parts) or "body"


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as ``{success: false, message, code}``."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        code = "USER_EXISTS" if exc.field == "email" else "CONFLICT"
        return _error_response(409, exc.message, code=code, details=exc.detail)

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
        if isinstance(exc, RateLimitedError):
            return _error_response(
                exc.status_code,
                exc.message,
                code=exc.error_code,
                retry_after=exc.retry_after,
                headers={"Retry-After": str(exc.retry_after)},
            )
        message = sanitize_error_message(exc.message) if exc.status_code >= 500 else exc.message
        return _error_response(exc.status_code, message, code=exc.error_code, details=exc.detail)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"field": _field_name(err.get("loc", ())), "message": err.get("msg", "invalid")}
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[e["field"] for e in errors],
        )
        return _error_response(400, "Validation failed", code="VALIDATION_ERROR", errors=errors)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(
            exc.status_code,
            message,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "Internal server error", code="INTERNAL_ERROR")
