from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tenantguard.api.schemas import Envelope, ErrorBody
from tenantguard.logging import get_logger, log_security_incident
from tenantguard.service.errors import (
    RateLimitExceeded,
    ServiceError,
    TenantIsolationViolation,
)
from tenantguard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}

# 401/403 bodies never say which check failed
_GENERIC_MESSAGES = {
    401: "authentication required",
    403: "access denied",
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


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage and framework errors onto the error envelope."""

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

    @app.exception_handler(TenantIsolationViolation)
    async def handle_tenant_violation(request: Request, exc: TenantIsolationViolation):
        log_security_incident(
            "tenant_isolation_blocked",
            logger,
            path=request.url.path,
            method=request.method,
            tenant_id=exc.tenant_id,
            offending_tenant_id=exc.offending_tenant_id,
            client_ip=request.client.host if request.client else None,
        )
        return _error_response(403, _GENERIC_MESSAGES[403], code="forbidden")

    @app.exception_handler(RateLimitExceeded)
    async def handle_rate_limited(request: Request, exc: RateLimitExceeded):
        logger.warning(
            "rate_limited",
            path=request.url.path,
            method=request.method,
            retry_after=exc.retry_after,
        )
        headers = {"Retry-After": str(max(int(exc.retry_after), 1))}
        return _error_response(
            429,
            exc.message,
            {"retry_after": exc.retry_after},
            code="rate_limited",
            headers=headers,
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.status_code in _GENERIC_MESSAGES:
            return _error_response(
                exc.status_code, _GENERIC_MESSAGES[exc.status_code], code=error_code
            )
        if exc.status_code >= 500:
            return _error_response(exc.status_code, "internal server error", code="server_error")
        return _error_response(exc.status_code, exc.message, exc.detail, code=error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        message = _GENERIC_MESSAGES.get(exc.status_code, message)
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

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
