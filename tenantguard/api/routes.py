from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.routing import APIRoute

from tenantguard.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    PasswordForgotRequest,
    PasswordResetRequest,
    PrincipalResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TwoFactorCodeRequest,
    TwoFactorEnableResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)
from tenantguard.config import Settings
from tenantguard.logging import get_correlation_id, get_logger
from tenantguard.service.context import AuthContainer, RequestContext, resolve_request
from tenantguard.service.errors import (
    AuthenticationError,
    RateLimitExceeded,
    ValidationError,
)
from tenantguard.service.guards import (
    Guard,
    LoginResult,
    Rejected,
    RejectReason,
    SessionGuard,
    TokenGuard,
    TwoFactorRequired,
)
from tenantguard.storage.models import TokenPair

logger = get_logger(__name__)

SESSION_COOKIE = "session_id"
REMEMBER_COOKIE = "remember_token"
TENANT_HEADER = "X-Tenant-ID"
PASSWORD_RESET_SCOPE = "password_reset"


class TenantScopedRoute(APIRoute):
    """Route that scans the rendered body of tenant-bound requests before sending.

    A body naming any tenant other than the pinned one is dropped entirely and
    the request fails with a tenant isolation error. Streamed or non-JSON
    bodies cannot be scanned and are refused the same way.
    """

    def get_route_handler(self) -> Callable:
        original_route_handler = super().get_route_handler()

        async def tenant_scoped_route_handler(request: Request) -> Response:
            response = await original_route_handler(request)
            tenant = getattr(request.state, "tenant_context", None)
            if tenant is None:
                return response
            container: AuthContainer = request.app.state.container
            container.tenancy.scan_rendered_response(tenant, getattr(response, "body", None))
            return response

        return tenant_scoped_route_handler


router = APIRouter(route_class=TenantScopedRoute)


def _envelope(data) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def get_container(request: Request) -> AuthContainer:
    return request.app.state.container


def get_guard(request: Request, container: AuthContainer = Depends(get_container)) -> Guard:
    """Request-scoped guard carrying whatever credential the caller presented."""
    return container.guard(
        authorization=request.headers.get("Authorization"),
        session_id=request.cookies.get(SESSION_COOKIE) or request.headers.get(SESSION_COOKIE),
        remember_cookie=request.cookies.get(REMEMBER_COOKIE),
        origin=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )


def _query_params(request: Request) -> Dict[str, Any]:
    """Query string as a dict; repeated keys keep every value as a list."""
    grouped: Dict[str, List[str]] = {}
    for key, value in request.query_params.multi_items():
        grouped.setdefault(key, []).append(value)
    return {key: values[0] if len(values) == 1 else values for key, values in grouped.items()}


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        # not JSON; body fields are validated by the route's own model
        return None


async def get_request_context(
    request: Request,
    container: AuthContainer = Depends(get_container),
    guard: Guard = Depends(get_guard),
) -> RequestContext:
    """Authenticate and pin the tenant before the handler runs."""
    ctx = await resolve_request(
        container,
        guard,
        header_tenant_id=request.headers.get(TENANT_HEADER),
        path=request.url.path,
        params=_query_params(request),
        body=await _json_body(request),
    )
    request.state.tenant_context = ctx.tenant
    return ctx


def require_permission(permission: str) -> Callable:
    """Dependency factory: resolve the request context and demand ``permission``."""

    async def _require(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        ctx.authorize(permission)
        return ctx

    return _require


def _token_pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        expires_at=pair.expires_at,
        scopes=list(pair.scopes),
    )


def _raise_rejected(result: Rejected) -> None:
    if result.reason is RejectReason.LOCKED_OUT:
        raise RateLimitExceeded(retry_after=result.retry_after)
    raise AuthenticationError(
        "invalid credentials", detail={"reason": result.reason.value}
    )


def _login_response(result: LoginResult, response: Response, settings: Settings) -> LoginResponse:
    """Render a ``LoginResult``; rejections become 401/429 errors."""
    if isinstance(result, Rejected):
        _raise_rejected(result)
    if isinstance(result, TwoFactorRequired):
        return LoginResponse(
            status="two_factor_required",
            temp_token=result.temp_token,
            expires_in=result.expires_in,
        )
    data = LoginResponse(
        status="authenticated",
        user_id=result.principal.id,
        tenant_id=result.tenant_id,
        must_change_password=result.principal.must_change_password,
    )
    if result.tokens is not None:
        data.tokens = _token_pair_response(result.tokens)
        data.expires_in = result.tokens.expires_in
    if result.session is not None:
        data.session_id = result.session.id
        data.session_expires_at = result.session.expires_at
        response.set_cookie(
            SESSION_COOKIE,
            result.session.id,
            httponly=True,
            secure=True,
            samesite="lax",
            max_age=settings.session_ttl_seconds,
            path="/",
        )
    if result.remember_cookie:
        response.set_cookie(
            REMEMBER_COOKIE,
            result.remember_cookie,
            httponly=True,
            secure=True,
            samesite="lax",
            max_age=settings.remember_ttl_seconds,
            path="/",
        )
    return data


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    response: Response,
    container: AuthContainer = Depends(get_container),
    guard: Guard = Depends(get_guard),
):
    """Authenticate with email and password.

    Returns a token pair (token guard) or a session id (session guard), or a
    ``two_factor_required`` challenge carrying a short-lived temporary token.

    Raises:
        401: invalid credentials or inactive account
        429: identity or origin locked out
    """
    credentials = {"email": body.email, "password": body.password}
    if body.tenant_id is not None:
        credentials["tenant_id"] = body.tenant_id
    result = await guard.authenticate(credentials, remember=body.remember)
    return _envelope(_login_response(result, response, container.settings))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: TwoFactorVerifyRequest,
    response: Response,
    container: AuthContainer = Depends(get_container),
    guard: Guard = Depends(get_guard),
):
    """Complete a pending login with a TOTP or backup code."""
    result = await guard.complete_two_factor(body.temp_token, body.code)
    return _envelope(_login_response(result, response, container.settings))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, guard: Guard = Depends(get_guard)):
    """Rotate a refresh token; the presented token cannot be used again."""
    if not isinstance(guard, TokenGuard):
        raise ValidationError("token refresh is not available for session authentication")
    pair = await guard.refresh(body.refresh_token)
    return _envelope(_token_pair_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    guard: Guard = Depends(get_guard),
):
    """End the current login. Safe to call repeatedly."""
    if isinstance(guard, TokenGuard):
        await guard.logout(refresh_token=body.refresh_token if body else None)
    else:
        await guard.logout()
    if isinstance(guard, SessionGuard):
        response.delete_cookie(SESSION_COOKIE, path="/")
        response.delete_cookie(REMEMBER_COOKIE, path="/")
    return _envelope({"status": "logged_out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(ctx: RequestContext = Depends(get_request_context)):
    principal = ctx.principal
    return _envelope(
        PrincipalResponse(
            id=principal.id,
            email=principal.email,
            name=principal.name,
            tenant_id=ctx.tenant_id,
            roles=ctx.roles(),
            permissions=ctx.permissions(),
            two_factor_enabled=ctx.container.two_factor.is_enabled(principal),
            must_change_password=principal.must_change_password,
        )
    )


@router.get("/auth/permissions", response_model=Envelope, tags=["auth"])
async def list_permissions(ctx: RequestContext = Depends(get_request_context)):
    return _envelope(
        {"tenant_id": ctx.tenant_id, "roles": ctx.roles(), "permissions": ctx.permissions()}
    )


@router.get("/auth/2fa", response_model=Envelope, tags=["auth"])
async def two_factor_status(ctx: RequestContext = Depends(get_request_context)):
    two_factor = ctx.container.two_factor
    return _envelope(
        TwoFactorStatusResponse(
            state=two_factor.state(ctx.principal).value,
            backup_codes_remaining=two_factor.remaining_backup_codes(ctx.principal),
        )
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def enable_two_factor(ctx: RequestContext = Depends(get_request_context)):
    """Start enrollment. The secret and backup codes are shown only here.

    Raises:
        409: two-factor authentication is already active
    """
    enrollment = ctx.container.two_factor.enable(ctx.principal)
    ctx.container.audit.log_event(
        "two_factor_enrollment_started",
        {"user_id": ctx.principal.id, "tenant_id": ctx.tenant_id},
    )
    return _envelope(TwoFactorEnableResponse(**enrollment.to_dict()))


@router.post("/auth/2fa/confirm", response_model=Envelope, tags=["auth"])
async def confirm_two_factor(
    body: TwoFactorCodeRequest, ctx: RequestContext = Depends(get_request_context)
):
    two_factor = ctx.container.two_factor
    if not two_factor.confirm(ctx.principal, body.code):
        raise ValidationError("invalid verification code")
    ctx.container.audit.log_event(
        "two_factor_enabled", {"user_id": ctx.principal.id, "tenant_id": ctx.tenant_id}
    )
    return _envelope(
        TwoFactorStatusResponse(
            state="active",
            backup_codes_remaining=two_factor.remaining_backup_codes(ctx.principal),
        )
    )


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_two_factor(
    body: TwoFactorCodeRequest, ctx: RequestContext = Depends(get_request_context)
):
    """Turn 2FA off; requires a current TOTP or backup code."""
    two_factor = ctx.container.two_factor
    if not two_factor.verify(ctx.principal, body.code):
        raise ValidationError("invalid verification code")
    two_factor.disable(ctx.principal)
    ctx.container.audit.log_event(
        "two_factor_disabled", {"user_id": ctx.principal.id, "tenant_id": ctx.tenant_id}
    )
    return _envelope(TwoFactorStatusResponse(state="unset"))


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: PasswordForgotRequest,
    request: Request,
    container: AuthContainer = Depends(get_container),
):
    """Send a reset link. The response is identical whether or not the account exists."""
    limiter = container.rate_limiter
    origin = _client_ip(request)
    # every request counts against the window, successful or not
    await limiter.consume(body.email, PASSWORD_RESET_SCOPE, origin=origin)
    container.password_reset.request_reset(body.email, body.tenant_id)
    return _envelope({"status": "sent"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: PasswordResetRequest, container: AuthContainer = Depends(get_container)
):
    await container.password_reset.complete_reset(body.token, body.password)
    return _envelope({"status": "reset"})
