from __future__ import annotations

from typing import Any, Callable, Optional

from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditSink
from tenantguard.service.credentials import CredentialStore
from tenantguard.service.errors import AuthenticationError
from tenantguard.service.tokens import TokenService
from tenantguard.storage.models import Principal, TokenType

logger = get_logger(__name__)

ResetNotifier = Callable[[Principal, str], None]


class PasswordResetService:
    """Single-use password reset tokens.

    Requesting a reset never reveals whether the address exists; the token is
    handed to ``notifier`` for delivery and redeemed exactly once.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        tokens: TokenService,
        audit: AuditSink,
        *,
        notifier: Optional[ResetNotifier] = None,
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.audit = audit
        self.notifier = notifier

    def request_reset(self, email: str, tenant_id: Any = None) -> Optional[str]:
        lookup = {"email": email}
        if tenant_id is not None:
            lookup["tenant_id"] = tenant_id
        principal = self.credentials.retrieve_by_credentials(lookup)
        if principal is None:
            logger.info("password_reset_unknown_account")
            return None
        tenant = str(tenant_id) if tenant_id is not None else principal.tenant_id
        token = self.tokens.issue_password_reset_token(principal.id, tenant).value
        self.audit.log_event(
            "password_reset_requested", {"user_id": principal.id, "tenant_id": tenant}
        )
        if self.notifier is not None:
            self.notifier(principal, token)
        return token

    async def complete_reset(self, token: str, new_password: str) -> Principal:
        claims = await self.tokens.verify(token, expected_type=TokenType.PASSWORD_RESET)
        principal = self.credentials.retrieve_by_id(claims.sub)
        if principal is None:
            raise AuthenticationError("invalid token")
        # validate before consuming so a rejected password keeps the token usable
        self.credentials.check_password_policy(new_password)
        if not await self.tokens.revoke(token):
            raise AuthenticationError("invalid token")
        self.credentials.set_password(principal.id, new_password)
        self.audit.log_event(
            "password_reset_completed", {"user_id": principal.id, "tenant_id": claims.tenant_id}
        )
        return principal
