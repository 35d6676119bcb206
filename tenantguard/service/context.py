from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Type

from argon2 import PasswordHasher

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditSink, RecordAuditSink
from tenantguard.service.credentials import CredentialStore
from tenantguard.service.errors import AuthenticationError
from tenantguard.service.guards import Guard, SessionGuard, TokenGuard, guard_class_for
from tenantguard.service.password_reset import PasswordResetService, ResetNotifier
from tenantguard.service.rate_limit import RateLimiter
from tenantguard.service.rbac import RbacResolver
from tenantguard.service.tenancy import TenantContext, TenantIsolationEnforcer
from tenantguard.service.tokens import TokenService
from tenantguard.service.two_factor import TwoFactorService
from tenantguard.storage.common import RecordStore, TTLCache
from tenantguard.storage.memory import MemoryCache, MemoryRecordStore
from tenantguard.storage.models import Principal
from tenantguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass
class AuthContainer:
    """Every collaborator a request pipeline needs, wired once.

    Passed explicitly (FastAPI keeps it on ``app.state``); there is no
    module-level instance.
    """

    settings: Settings
    records: RecordStore
    cache: TTLCache
    audit: AuditSink
    tokens: TokenService
    credentials: CredentialStore
    rbac: RbacResolver
    two_factor: TwoFactorService
    rate_limiter: RateLimiter
    tenancy: TenantIsolationEnforcer
    password_reset: PasswordResetService
    guard_class: Type[Guard]

    def guard(
        self,
        *,
        authorization: Optional[str] = None,
        session_id: Optional[str] = None,
        remember_cookie: Optional[str] = None,
        origin: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Guard:
        """Build the request-scoped guard of the configured strategy."""
        deps = dict(
            settings=self.settings,
            credentials=self.credentials,
            tokens=self.tokens,
            two_factor=self.two_factor,
            rate_limiter=self.rate_limiter,
            audit=self.audit,
            cache=self.cache,
            origin=origin,
        )
        if issubclass(self.guard_class, TokenGuard):
            return self.guard_class(bearer=TokenGuard.extract_bearer(authorization), **deps)
        if issubclass(self.guard_class, SessionGuard):
            return self.guard_class(
                session_id=session_id,
                remember_cookie=remember_cookie,
                user_agent=user_agent,
                **deps,
            )
        return self.guard_class(**deps)

    async def close(self) -> None:
        close = getattr(self.cache, "close", None)
        if close is not None:
            await close()


@dataclass
class RequestContext:
    """Authenticated principal and pinned tenant for one request."""

    container: AuthContainer
    guard: Guard
    principal: Principal
    tenant: TenantContext
    _permissions: Optional[List[str]] = field(default=None, repr=False)

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id

    def permissions(self) -> List[str]:
        if self._permissions is None:
            self._permissions = self.container.rbac.get_permissions(
                self.principal, self.tenant_id
            )
        return self._permissions

    def roles(self) -> List[str]:
        return self.container.rbac.get_roles(self.principal, self.tenant_id)

    def can(self, permission: str) -> bool:
        return permission in self.permissions()

    def authorize(self, permission: str) -> None:
        self.container.rbac.authorize(self.principal, self.tenant_id, permission)


async def resolve_request(
    container: AuthContainer,
    guard: Guard,
    *,
    header_tenant_id: Optional[str] = None,
    path: Optional[str] = None,
    params: Optional[dict] = None,
    body: Any = None,
) -> RequestContext:
    """Guard -> principal -> pinned tenant, before any handler runs."""
    principal = await guard.user()
    if principal is None or guard.tenant_id is None:
        raise AuthenticationError()
    tenant = container.tenancy.enforce_request(
        guard.tenant_id,
        header_tenant_id=header_tenant_id,
        path=path,
        params=params,
        body=body,
        principal_id=principal.id,
    )
    return RequestContext(container=container, guard=guard, principal=principal, tenant=tenant)


def _build_cache(settings: Settings, clock: Callable[[], float]) -> TTLCache:
    if settings.redis_url:
        if settings.redis_sync_client:
            cache = SyncRedisCache(settings.redis_url)
        else:
            cache = RedisCache(settings.redis_url)
        cache.verify_connection()
        logger.info(
            "cache_backend_selected", backend="redis", sync_client=settings.redis_sync_client
        )
        return cache
    logger.info("cache_backend_selected", backend="memory")
    return MemoryCache(clock=clock)


def build_container(
    settings: Settings,
    *,
    records: Optional[RecordStore] = None,
    cache: Optional[TTLCache] = None,
    audit: Optional[AuditSink] = None,
    hasher: Optional[PasswordHasher] = None,
    clock: Callable[[], float] = time.time,
    resource_tables: Optional[dict] = None,
    api_prefix: str = "",
    reset_notifier: Optional[ResetNotifier] = None,
) -> AuthContainer:
    """Wire the auth subsystem; missing collaborators default to in-memory ones."""
    records = records if records is not None else MemoryRecordStore()
    cache = cache if cache is not None else _build_cache(settings, clock)
    audit = audit if audit is not None else RecordAuditSink(records)
    tokens = TokenService(settings, cache, clock=clock)
    credentials = CredentialStore(records, settings, hasher=hasher)
    two_factor = TwoFactorService(records, settings, clock=clock)
    guard_class = guard_class_for(settings.auth_guard)
    logger.info("auth_container_built", guard=settings.auth_guard.value)
    return AuthContainer(
        settings=settings,
        records=records,
        cache=cache,
        audit=audit,
        tokens=tokens,
        credentials=credentials,
        rbac=RbacResolver(credentials),
        two_factor=two_factor,
        rate_limiter=RateLimiter(cache, settings, audit),
        tenancy=TenantIsolationEnforcer(
            records, audit, resource_tables=resource_tables, api_prefix=api_prefix
        ),
        password_reset=PasswordResetService(
            credentials, tokens, audit, notifier=reset_notifier
        ),
        guard_class=guard_class,
    )
