from __future__ import annotations

from typing import Any, List

from tenantguard.logging import get_logger
from tenantguard.service.credentials import CredentialStore
from tenantguard.service.errors import AuthorizationError
from tenantguard.storage.models import Principal

logger = get_logger(__name__)


class RbacResolver:
    """Effective roles and permissions of a principal inside one tenant.

    Grants are additive only: the permission set is the union of what the
    principal's active roles in the tenant carry and what was granted to the
    principal directly in that tenant. Nothing granted in another tenant is
    ever consulted.
    """

    def __init__(self, credentials: CredentialStore) -> None:
        self.credentials = credentials

    def _scoped(self, principal: Principal, tenant_id: Any) -> bool:
        return tenant_id is not None and self.credentials.is_member(principal.id, tenant_id)

    def get_roles(self, principal: Principal, tenant_id: Any) -> List[str]:
        if not self._scoped(principal, tenant_id):
            return []
        roles = self.credentials.roles_for(principal.id, tenant_id)
        return sorted({role.name for role in roles})

    def get_permissions(self, principal: Principal, tenant_id: Any) -> List[str]:
        if not self._scoped(principal, tenant_id):
            return []
        roles = self.credentials.roles_for(principal.id, tenant_id)
        granted = {p.name for p in self.credentials.role_permissions(r.id for r in roles)}
        granted.update(
            p.name for p in self.credentials.direct_permissions(principal.id, tenant_id)
        )
        return sorted(granted)

    def has_role(self, principal: Principal, tenant_id: Any, role: str) -> bool:
        return role in self.get_roles(principal, tenant_id)

    def has_permission(self, principal: Principal, tenant_id: Any, permission: str) -> bool:
        return permission in self.get_permissions(principal, tenant_id)

    def authorize(self, principal: Principal, tenant_id: Any, permission: str) -> None:
        if not self.has_permission(principal, tenant_id, permission):
            logger.warning(
                "authorization_denied",
                user_id=principal.id,
                tenant_id=str(tenant_id),
                permission=permission,
            )
            raise AuthorizationError()
