from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from deviceauth.api.schemas import Envelope, ErrorBody
from deviceauth.logging import get_correlation_id, get_logger
from deviceauth.service.errors import ServiceError
from deviceauth.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    503: "persistence_failure",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _request_id(request: Request) -> str | None:
    """Correlation id for ``request``, also reachable outside the middleware context."""
    return (
        getattr(request.state, "request_id", None)
        or get_correlation_id()
        or request.headers.get("X-Request-ID")
    )


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    request_id = _request_id(request)
    envelope = Envelope(status="error", error=error_body, request_id=request_id)
    response_headers = dict(headers or {})
    if request_id:
        response_headers.setdefault("X-Request-ID", request_id)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=response_headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for service and storage errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            retryable=exc.retryable,
            message=exc.message,
        )
        headers = None
        if exc.status_code == 401:
            headers = {"WWW-Authenticate": "Bearer"}
        elif exc.retryable:
            headers = {"Retry-After": "1"}
        return _error_response(
            request,
            exc.status_code,
            exc.message,
            exc.detail or None,
            code=exc.error_code,
            headers=headers,
        )

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            operation=exc.operation,
        )
        return _error_response(
            request,
            503,
            "session store unavailable",
            code="persistence_failure",
            headers={"Retry-After": "1"},
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(request, 409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            error_count=len(exc.errors()),
        )
        details = [
            {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return _error_response(
            request, 400, "invalid request", details, code="validation_error"
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(
            request, exc.status_code, message, headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )
        return _error_response(
            request, 500, "internal server error", code="server_error"
        )
