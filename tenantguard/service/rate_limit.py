from __future__ import annotations

import hashlib
from typing import Optional, Tuple

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditSink
from tenantguard.service.errors import RateLimitExceeded
from tenantguard.storage.common import TTLCache

logger = get_logger(__name__)


class RateLimiter:
    """Failure counters per identity and per origin, held in the TTL cache.

    The identity counter (e.g. tenant + email) locks one account out after
    ``max_login_attempts`` failures; the origin counter (e.g. client IP) caps
    failures across every identity tried from one place. Both windows slide:
    each failure pushes the expiry out by ``lockout_seconds``.
    """

    def __init__(self, cache: TTLCache, settings: Settings, audit: AuditSink) -> None:
        self.cache = cache
        self.settings = settings
        self.audit = audit

    @staticmethod
    def _key(scope: str, kind: str, value: str) -> str:
        # hash the subject so delimiters inside emails cannot collide scopes
        digest = hashlib.sha256(value.strip().lower().encode()).hexdigest()
        return f"rate:{scope}:{kind}:{digest}"

    def _identity_key(self, identity: str, scope: str) -> str:
        return self._key(scope, "identity", identity)

    def _origin_key(self, origin: str, scope: str) -> str:
        return self._key(scope, "origin", origin)

    async def _count(self, key: str) -> int:
        raw = await self.cache.get(key)
        try:
            return max(0, int(raw)) if raw is not None else 0
        except (TypeError, ValueError):
            return 0

    async def allow(
        self, identity: str, scope: str = "login", *, origin: Optional[str] = None
    ) -> bool:
        if await self._count(self._identity_key(identity, scope)) >= self.settings.max_login_attempts:
            return False
        if origin and await self._count(self._origin_key(origin, scope)) >= self.settings.origin_max_attempts:
            return False
        return True

    async def retry_after(
        self, identity: str, scope: str = "login", *, origin: Optional[str] = None
    ) -> int:
        keys = [self._identity_key(identity, scope)]
        if origin:
            keys.append(self._origin_key(origin, scope))
        remaining = [await self.cache.ttl(key) for key in keys]
        return max([ttl for ttl in remaining if ttl > 0] or [self.settings.lockout_seconds])

    async def record_failure(
        self, identity: str, scope: str = "login", *, origin: Optional[str] = None
    ) -> int:
        count, _ = await self._bump(identity, scope, origin)
        return count

    async def reserve(
        self, identity: str, scope: str = "login", *, origin: Optional[str] = None
    ) -> bool:
        """Count one attempt before it is checked.

        The increment is the only read, so of N parallel attempts at count
        ``max - 1`` exactly one proceeds. Blocked attempts are counted too and
        keep the window open. A successful attempt must call ``record_success``.
        """
        count, origin_count = await self._bump(identity, scope, origin)
        if count > self.settings.max_login_attempts:
            return False
        if origin and origin_count > self.settings.origin_max_attempts:
            return False
        return True

    async def consume(
        self, identity: str, scope: str = "login", *, origin: Optional[str] = None
    ) -> None:
        """``reserve`` that raises ``RateLimitExceeded`` without saying which counter tripped."""
        if await self.reserve(identity, scope, origin=origin):
            return
        retry = await self.retry_after(identity, scope, origin=origin)
        logger.warning("rate_limit_blocked", scope=scope, retry_after=retry)
        raise RateLimitExceeded(retry_after=retry)

    async def _bump(
        self, identity: str, scope: str, origin: Optional[str]
    ) -> Tuple[int, int]:
        window = self.settings.lockout_seconds
        count = await self.cache.increment(self._identity_key(identity, scope), window)
        if count == self.settings.failure_alert_threshold:
            self._alert(scope, "identity", count, identity=identity)
        origin_count = 0
        if origin:
            origin_count = await self.cache.increment(self._origin_key(origin, scope), window)
            if origin_count == self.settings.origin_alert_threshold:
                self._alert(scope, "origin", origin_count, origin=origin)
        if count == self.settings.max_login_attempts:
            logger.warning("rate_limit_lockout_started", scope=scope, attempts=count)
        return count, origin_count

    async def record_success(
        self, identity: str, scope: str = "login", *, origin: Optional[str] = None
    ) -> None:
        await self.cache.forget(self._identity_key(identity, scope))
        if origin:
            # partial decay keeps pressure on an origin stuffing many accounts
            await self.cache.decay(
                self._origin_key(origin, scope), self.settings.origin_decay_factor
            )

    def _alert(self, scope: str, kind: str, count: int, **subject: str) -> None:
        # the exact threshold crossing is seen by exactly one atomic increment
        self.audit.log_event(
            "security_alert",
            {"scope": scope, "counter": kind, "failures": count, **subject},
        )
