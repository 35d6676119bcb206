from __future__ import annotations

import abc
import json
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type, Union

from tenantguard.config import GuardDriver, Settings
from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditSink
from tenantguard.service.credentials import CredentialStore
from tenantguard.service.errors import AuthenticationError
from tenantguard.service.rate_limit import RateLimiter
from tenantguard.service.tokens import TokenService
from tenantguard.service.two_factor import TwoFactorService
from tenantguard.storage.common import TTLCache, normalize_id
from tenantguard.storage.models import Principal, Session, TokenClaims, TokenPair, TokenType

logger = get_logger(__name__)

LOGIN_SCOPE = "login"
TWO_FACTOR_SCOPE = "two_factor"


class RejectReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED_OUT = "locked_out"
    INACTIVE = "inactive"
    INVALID_CODE = "invalid_code"
    INVALID_TOKEN = "invalid_token"


@dataclass(frozen=True)
class Authenticated:
    principal: Principal
    tenant_id: str
    tokens: Optional[TokenPair] = None
    session: Optional[Session] = None
    remember_cookie: Optional[str] = None


@dataclass(frozen=True)
class TwoFactorRequired:
    """Password accepted; a second factor must be presented with ``temp_token``."""

    temp_token: str
    expires_in: int


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason
    retry_after: int = 0


LoginResult = Union[Authenticated, TwoFactorRequired, Rejected]


class Guard(abc.ABC):
    """Turns credentials or a request credential into a principal.

    Instances are request-scoped: they carry whatever the caller presented
    (bearer token, session id) and cache the resolved principal. The login
    state machine lives here so both strategies share it:

    ``authenticate`` -> ``Authenticated`` | ``TwoFactorRequired`` | ``Rejected``
    ``complete_two_factor`` -> ``Authenticated`` | ``Rejected``
    """

    driver: GuardDriver

    def __init__(
        self,
        *,
        settings: Settings,
        credentials: CredentialStore,
        tokens: TokenService,
        two_factor: TwoFactorService,
        rate_limiter: RateLimiter,
        audit: AuditSink,
        cache: TTLCache,
        origin: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.tokens = tokens
        self.two_factor = two_factor
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.cache = cache
        self.origin = origin
        self._principal: Optional[Principal] = None
        self._tenant_id: Optional[str] = None

    @property
    def tenant_id(self) -> Optional[str]:
        """Tenant bound to the authenticated principal for this request."""
        return self._tenant_id

    @staticmethod
    def _identity(credentials: Mapping[str, Any]) -> str:
        email = str(credentials.get("email") or "").strip().lower()
        tenant = normalize_id(credentials.get("tenant_id")) or "*"
        return f"{tenant}:{email}"

    def _audit(self, name: str, **context: Any) -> None:
        if self.origin:
            context.setdefault("ip", self.origin)
        self.audit.log_event(name, context)

    async def attempt(self, credentials: Mapping[str, Any]) -> bool:
        result = await self.authenticate(credentials)
        return isinstance(result, Authenticated)

    async def authenticate(
        self, credentials: Mapping[str, Any], *, remember: bool = False
    ) -> LoginResult:
        identity = self._identity(credentials)
        requested_tenant = normalize_id(credentials.get("tenant_id"))
        self._audit("login_attempt", tenant_id=requested_tenant)

        # counted before the password check; a failure needs no further write
        if not await self.rate_limiter.reserve(identity, LOGIN_SCOPE, origin=self.origin):
            retry = await self.rate_limiter.retry_after(identity, LOGIN_SCOPE, origin=self.origin)
            self._audit(
                "login_failed",
                reason=RejectReason.LOCKED_OUT.value,
                tenant_id=requested_tenant,
            )
            return Rejected(RejectReason.LOCKED_OUT, retry_after=retry)

        principal = self.credentials.retrieve_by_credentials(credentials, active_only=False)
        if not self.credentials.validate_credentials(principal, credentials):
            self._audit(
                "login_failed",
                reason=RejectReason.INVALID_CREDENTIALS.value,
                tenant_id=requested_tenant,
                user_id=principal.id if principal else None,
            )
            return Rejected(RejectReason.INVALID_CREDENTIALS)

        tenant_id = requested_tenant or principal.tenant_id
        if not principal.is_active or not self.credentials.is_member(principal.id, tenant_id):
            self._audit(
                "login_failed",
                reason=RejectReason.INACTIVE.value,
                tenant_id=tenant_id,
                user_id=principal.id,
            )
            return Rejected(RejectReason.INACTIVE)

        self.credentials.rehash_if_required(principal, str(credentials.get("password")))

        if self.two_factor.is_enabled(principal):
            # the login counter is only cleared once the second factor passes
            temp = self.tokens.issue_two_factor_token(
                principal.id,
                tenant_id,
                remember=True if remember else None,
                login_tenant=requested_tenant,
            )
            self._audit("two_factor_challenge", user_id=principal.id, tenant_id=tenant_id)
            return TwoFactorRequired(
                temp_token=temp.value,
                expires_in=self.settings.two_factor_token_ttl_seconds,
            )
        result = await self._complete(principal, tenant_id, remember)
        await self.rate_limiter.record_success(identity, LOGIN_SCOPE, origin=self.origin)
        return result

    async def complete_two_factor(self, temp_token: str, code: Any) -> LoginResult:
        try:
            claims = await self.tokens.verify(temp_token, expected_type=TokenType.TWO_FACTOR)
        except AuthenticationError:
            return Rejected(RejectReason.INVALID_TOKEN)

        if not await self.rate_limiter.reserve(claims.sub, TWO_FACTOR_SCOPE, origin=self.origin):
            retry = await self.rate_limiter.retry_after(
                claims.sub, TWO_FACTOR_SCOPE, origin=self.origin
            )
            self._audit(
                "two_factor_failed", reason=RejectReason.LOCKED_OUT.value, user_id=claims.sub
            )
            return Rejected(RejectReason.LOCKED_OUT, retry_after=retry)

        principal = self.credentials.retrieve_by_id(claims.sub)
        if principal is None or not self.credentials.is_member(principal.id, claims.tenant_id):
            self._audit(
                "two_factor_failed",
                reason=RejectReason.INVALID_TOKEN.value,
                user_id=claims.sub,
                tenant_id=claims.tenant_id,
            )
            return Rejected(RejectReason.INVALID_TOKEN)

        if not self.two_factor.verify(principal, code):
            self._audit(
                "two_factor_failed",
                reason=RejectReason.INVALID_CODE.value,
                user_id=principal.id,
                tenant_id=claims.tenant_id,
            )
            return Rejected(RejectReason.INVALID_CODE)

        # the temporary token is single-use; a concurrent completion loses here
        if not await self.tokens.revoke(temp_token):
            return Rejected(RejectReason.INVALID_TOKEN)
        result = await self._complete(
            principal, claims.tenant_id, bool(claims.extra.get("remember"))
        )
        await self.rate_limiter.record_success(claims.sub, TWO_FACTOR_SCOPE, origin=self.origin)
        login_identity = self._identity(
            {"email": principal.email, "tenant_id": claims.extra.get("login_tenant")}
        )
        await self.rate_limiter.record_success(login_identity, LOGIN_SCOPE, origin=self.origin)
        return result

    async def _complete(self, principal: Principal, tenant_id: str, remember: bool) -> Authenticated:
        result = await self.login(principal, tenant_id=tenant_id, remember=remember)
        self.credentials.record_login(principal, self.origin)
        self._audit("login_success", user_id=principal.id, tenant_id=tenant_id)
        return result

    async def check(self) -> bool:
        return await self.user() is not None

    @abc.abstractmethod
    async def login(
        self, principal: Principal, *, tenant_id: Optional[str] = None, remember: bool = False
    ) -> Authenticated: ...

    @abc.abstractmethod
    async def logout(self) -> None: ...

    @abc.abstractmethod
    async def user(self) -> Optional[Principal]: ...


class TokenGuard(Guard):
    """Stateless strategy: the caller presents a signed bearer access token."""

    driver = GuardDriver.TOKEN

    def __init__(self, *, bearer: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._bearer = bearer
        self._claims: Optional[TokenClaims] = None

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    @property
    def claims(self) -> Optional[TokenClaims]:
        return self._claims

    async def login(
        self, principal: Principal, *, tenant_id: Optional[str] = None, remember: bool = False
    ) -> Authenticated:
        tenant = normalize_id(tenant_id) or principal.tenant_id
        pair = self.tokens.issue_pair(principal.id, tenant)
        self._bearer = pair.access_token
        self._claims = None
        self._principal = principal
        self._tenant_id = tenant
        return Authenticated(principal=principal, tenant_id=tenant, tokens=pair)

    async def user(self) -> Optional[Principal]:
        if self._principal is not None:
            return self._principal
        if not self._bearer:
            return None
        try:
            claims = await self.tokens.verify(self._bearer, expected_type=TokenType.ACCESS)
        except AuthenticationError:
            return None
        principal = self.credentials.retrieve_by_id(claims.sub)
        if principal is None or not self.credentials.is_member(principal.id, claims.tenant_id):
            logger.info("token_principal_unavailable", user_id=claims.sub, tenant_id=claims.tenant_id)
            return None
        self._claims = claims
        self._principal = principal
        self._tenant_id = claims.tenant_id
        return principal

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = await self.tokens.verify(refresh_token, expected_type=TokenType.REFRESH)
        principal = self.credentials.retrieve_by_id(claims.sub)
        if principal is None or not self.credentials.is_member(principal.id, claims.tenant_id):
            await self.tokens.revoke(refresh_token)
            raise AuthenticationError("invalid token")
        pair = await self.tokens.refresh(refresh_token)
        self._audit("token_refresh", user_id=principal.id, tenant_id=claims.tenant_id)
        return pair

    async def logout(self, refresh_token: Optional[str] = None) -> None:
        """Revoke the caller's tokens; calling it again is a no-op.

        Nothing is revoked unless the bearer is a live access token, and the
        refresh token is only revoked when it belongs to the same login.
        """
        claims = self._claims
        if claims is None and self._bearer:
            try:
                claims = await self.tokens.verify(self._bearer, expected_type=TokenType.ACCESS)
            except AuthenticationError:
                claims = None
        if claims is not None:
            revoked = await self.tokens.revoke(self._bearer)
            if refresh_token and await self._owns_refresh_token(claims, refresh_token):
                revoked = await self.tokens.revoke(refresh_token) or revoked
            if revoked:
                self._audit("logout", user_id=claims.sub, tenant_id=claims.tenant_id)
        self._bearer = None
        self._claims = None
        self._principal = None
        self._tenant_id = None

    async def _owns_refresh_token(self, access: TokenClaims, refresh_token: str) -> bool:
        try:
            claims = await self.tokens.verify(refresh_token, expected_type=TokenType.REFRESH)
        except AuthenticationError:
            return False
        if claims.sub != access.sub or claims.tenant_id != access.tenant_id:
            logger.warning("logout_refresh_token_mismatch", user_id=access.sub)
            return False
        return True


SESSION_KEY = "auth:session:{session_id}"


class SessionGuard(Guard):
    """Stateful strategy: an opaque session id maps to a server-side session."""

    driver = GuardDriver.SESSION

    def __init__(
        self,
        *,
        session_id: Optional[str] = None,
        remember_cookie: Optional[str] = None,
        user_agent: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._session_id = session_id
        self._remember_cookie = remember_cookie
        self._user_agent = user_agent
        self._session: Optional[Session] = None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    async def _load_session(self) -> Optional[Session]:
        if not self._session_id:
            return None
        raw = await self.cache.get(SESSION_KEY.format(session_id=self._session_id))
        if not raw:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("session_payload_invalid", error=str(exc))
            return None

    async def login(
        self, principal: Principal, *, tenant_id: Optional[str] = None, remember: bool = False
    ) -> Authenticated:
        tenant = normalize_id(tenant_id) or principal.tenant_id
        if self._session_id:
            # a fresh id on every login defeats session fixation
            await self.cache.forget(SESSION_KEY.format(session_id=self._session_id))
        ttl = self.settings.session_ttl_seconds
        session = Session.new(
            principal.id, tenant, ttl, user_agent=self._user_agent, ip_addr=self.origin
        )
        await self.cache.put(
            SESSION_KEY.format(session_id=session.id), json.dumps(session.to_dict()), ttl
        )
        cookie = None
        if remember:
            token = secrets.token_urlsafe(32)
            self.credentials.update_remember_token(principal, token)
            cookie = f"{principal.id}|{token}"
        self._session_id = session.id
        self._session = session
        self._principal = principal
        self._tenant_id = tenant
        return Authenticated(
            principal=principal, tenant_id=tenant, session=session, remember_cookie=cookie
        )

    async def user(self) -> Optional[Principal]:
        if self._principal is not None:
            return self._principal
        session = await self._load_session()
        if session is not None:
            principal = self.credentials.retrieve_by_id(session.user_id)
            if principal is None or not self.credentials.is_member(principal.id, session.tenant_id):
                return None
            self._session = session
            self._principal = principal
            self._tenant_id = session.tenant_id
            return principal
        return await self._user_from_remember_cookie()

    async def _user_from_remember_cookie(self) -> Optional[Principal]:
        if not self._remember_cookie or "|" not in self._remember_cookie:
            return None
        principal_id, token = self._remember_cookie.split("|", 1)
        principal = self.credentials.retrieve_by_remember_token(principal_id, token)
        if principal is None or not self.credentials.is_member(principal.id, principal.tenant_id):
            return None
        await self.login(principal, tenant_id=principal.tenant_id)
        return principal

    async def logout(self) -> None:
        """Forget the session and the remember token; repeated calls do nothing."""
        principal = self._principal
        session = self._session or await self._load_session()
        if principal is None and session is not None:
            principal = self.credentials.retrieve_by_id(session.user_id)
        if self._session_id:
            await self.cache.forget(SESSION_KEY.format(session_id=self._session_id))
        if principal is not None:
            if principal.remember_token:
                self.credentials.update_remember_token(principal, None)
            self._audit(
                "logout",
                user_id=principal.id,
                tenant_id=session.tenant_id if session else principal.tenant_id,
            )
        self._session_id = None
        self._remember_cookie = None
        self._session = None
        self._principal = None
        self._tenant_id = None


GUARD_CLASSES: Dict[GuardDriver, Type[Guard]] = {
    GuardDriver.TOKEN: TokenGuard,
    GuardDriver.SESSION: SessionGuard,
}


def guard_class_for(driver: GuardDriver) -> Type[Guard]:
    """Resolve the guard strategy once, at container construction."""
    return GUARD_CLASSES[GuardDriver(driver)]
