from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from otplogin.api.schemas import Envelope, ErrorBody
from otplogin.config import get_settings
from otplogin.logging import get_correlation_id, get_logger
from otplogin.service.errors import RateLimitedError, ServiceError
from otplogin.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}

_VALIDATION_DETAIL = "Your request parameters didn't validate correctly."


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Dict[str, str] | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(
        status="error",
        error=error_body,
        request_id=get_correlation_id() or str(uuid4()),
    )
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _problem_type(slug: str) -> str:
    return f"{get_settings().problem_type_base.rstrip('/')}/{slug}"


def rate_limit_problem(request: Request, exc: RateLimitedError) -> JSONResponse:
    """429 problem body with Retry-After and X-RateLimit-* headers."""
    body = {
        "type": _problem_type("rate-limit-exceeded"),
        "title": "Too Many Requests",
        "status": 429,
        "detail": exc.message,
        "instance": request.url.path,
        "retryAfter": exc.retry_after,
        "timestamp": _timestamp(),
    }
    headers = {
        "Retry-After": str(exc.retry_after),
        "X-RateLimit-Limit": str(exc.limit),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": str(exc.retry_after),
    }
    return JSONResponse(status_code=429, content=body, headers=headers)


def _field_errors(exc: RequestValidationError) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = ".".join(loc) or "body"
        if error.get("type") == "missing" or (
            error.get("type") == "string_type" and error.get("input") is None
        ):
            message = "must not be null"
        else:
            message = str(error.get("msg", "invalid value"))
            if message.startswith("Value error, "):
                message = message[len("Value error, "):]
        errors.setdefault(field, []).append(message)
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(RateLimitedError)
    async def handle_rate_limited(request: Request, exc: RateLimitedError):
        logger.warning(
            "rate_limited_response",
            path=request.url.path,
            method=request.method,
            scope=exc.scope,
            retry_after=exc.retry_after,
        )
        return rate_limit_problem(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=sorted(errors),
        )
        body = {
            "type": _problem_type("validation-error"),
            "title": "Validation Failed",
            "status": 400,
            "detail": _VALIDATION_DETAIL,
            "errors": errors,
            "timestamp": _timestamp(),
        }
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

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
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            code = None
            details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
        return _error_response(
            exc.status_code, message, details, code=code, headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")


__all__ = ["register_exception_handlers", "rate_limit_problem"]
