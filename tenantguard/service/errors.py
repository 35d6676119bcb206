from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credentials, invalid/expired/revoked token or locked account (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "unauthenticated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthorizationError(ServiceError):
    """Principal lacks the role or permission for the operation (403)."""
    status_code = 403
    error_code = "forbidden"

    def __init__(self, message: str = "forbidden", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TenantIsolationViolation(AuthorizationError):
    """Cross-tenant access attempt or detected leak (403, always fatal)."""

    def __init__(
        self,
        message: str = "forbidden",
        *,
        tenant_id: Optional[str] = None,
        offending_tenant_id: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        # kept off ``detail`` so handlers never echo them to the caller
        self.tenant_id = tenant_id
        self.offending_tenant_id = offending_tenant_id


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. two-factor already active (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitExceeded(ServiceError):
    """Too many failures; retry after ``retry_after`` seconds (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str = "too many attempts", *, retry_after: int = 0, **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, int(retry_after))


class ConfigurationError(ServiceError):
    """Fatal misconfiguration detected at startup (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "TenantIsolationViolation",
    "NotFoundError",
    "ConflictError",
    "RateLimitExceeded",
    "ConfigurationError",
]
