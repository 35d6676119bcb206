from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.errors import NotFoundError, ValidationError
from tenantguard.storage.common import RecordStore, normalize_id
from tenantguard.storage.models import Permission, Principal, Role, Tenant

logger = get_logger(__name__)

# Credential keys never used as lookup criteria.
_SECRET_KEYS = {"password", "remember", "code", "otp"}


def _normalize_email(email: Any) -> Any:
    return email.strip().lower() if isinstance(email, str) else email


class CredentialStore:
    """Identity lookups, password verification and RBAC joins.

    Holds no business-module knowledge; everything here is keyed by principal,
    tenant, role or permission ids.
    """

    def __init__(
        self,
        records: RecordStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.records = records
        self.settings = settings
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    # -- principals -------------------------------------------------------

    def _memberships(self, user_id: str) -> Dict[str, bool]:
        rows = self.records.table("user_tenants").where(user_id=user_id).get()
        return {str(row["tenant_id"]): bool(row.get("is_active", True)) for row in rows}

    def _to_principal(self, row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=str(row["tenant_id"]),
            password_hash=row.get("password_hash"),
            name=row.get("name"),
            is_active=bool(row.get("is_active", True)),
            tenants=self._memberships(str(row["id"])),
            remember_token=row.get("remember_token"),
            must_change_password=bool(row.get("must_change_password", False)),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
        )

    def retrieve_by_id(self, principal_id: Any) -> Optional[Principal]:
        if principal_id is None:
            return None
        row = self.records.table("users").where(id=principal_id, is_active=True).first()
        return self._to_principal(row) if row else None

    def retrieve_by_credentials(
        self, credentials: Mapping[str, Any], *, active_only: bool = True
    ) -> Optional[Principal]:
        """Find the principal matching every non-secret credential key.

        A ``tenant_id`` key is not a users column; it is checked against the
        principal's active memberships instead.
        """
        criteria = {
            key: value
            for key, value in credentials.items()
            if key not in _SECRET_KEYS and "password" not in key
        }
        tenant_id = criteria.pop("tenant_id", None)
        if not criteria:
            return None
        if "email" in criteria:
            criteria["email"] = _normalize_email(criteria["email"])
        if active_only:
            criteria["is_active"] = True
        row = self.records.table("users").where(**criteria).first()
        if not row:
            return None
        principal = self._to_principal(row)
        if tenant_id is not None and not self.is_member(principal.id, tenant_id):
            logger.info("credential_tenant_mismatch", user_id=principal.id, tenant_id=tenant_id)
            return None
        return principal

    def validate_credentials(
        self, principal: Optional[Principal], credentials: Mapping[str, Any]
    ) -> bool:
        """Verify the password; runs a dummy hash when there is no principal.

        argon2 verification compares digests in constant time, and the dummy
        run keeps the unknown-user path as slow as the wrong-password path.
        """
        password = credentials.get("password")
        if not isinstance(password, str) or not password:
            return False
        if principal is None or not principal.password_hash:
            self._burn(password)
            return False
        try:
            return self._hasher.verify(principal.password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _burn(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        try:
            self._hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerificationError):
            pass

    def rehash_if_required(self, principal: Principal, password: str) -> bool:
        if not principal.password_hash:
            return False
        try:
            needs = self._hasher.check_needs_rehash(principal.password_hash)
        except InvalidHash:
            needs = True
        if not needs:
            return False
        new_hash = self._hasher.hash(password)
        self.records.table("users").where(id=principal.id).update({"password_hash": new_hash})
        principal.password_hash = new_hash
        logger.info("password_rehashed", user_id=principal.id)
        return True

    def check_password_policy(self, password: str) -> None:
        problems: List[str] = []
        if len(password or "") < self.settings.password_min_length:
            problems.append(f"at least {self.settings.password_min_length} characters")
        if self.settings.password_require_mixed_case and not (
            any(c.isupper() for c in password) and any(c.islower() for c in password)
        ):
            problems.append("upper and lower case letters")
        if self.settings.password_require_number and not any(c.isdigit() for c in password):
            problems.append("a number")
        if problems:
            raise ValidationError(
                "password does not meet the policy", detail={"requires": problems}
            )

    def set_password(
        self, principal_id: str, password: str, *, enforce_policy: bool = True
    ) -> None:
        if enforce_policy:
            self.check_password_policy(password)
        updated = self.records.table("users").where(id=principal_id).update(
            {"password_hash": self._hasher.hash(password), "must_change_password": False}
        )
        if not updated:
            raise NotFoundError("principal not found")

    def create_principal(
        self,
        email: str,
        password: str,
        tenant_id: Any,
        *,
        name: Optional[str] = None,
        is_active: bool = True,
        must_change_password: bool = False,
    ) -> Principal:
        row = self.records.table("users").insert(
            {
                "email": _normalize_email(email),
                "name": name,
                "password_hash": self._hasher.hash(password),
                "tenant_id": normalize_id(tenant_id),
                "is_active": is_active,
                "must_change_password": must_change_password,
                "remember_token": None,
                "created_at": datetime.now(timezone.utc),
            }
        )
        self.assign_to_tenant(row["id"], tenant_id)
        return self._to_principal(row)

    def record_login(self, principal: Principal, ip_addr: Optional[str] = None) -> None:
        now = datetime.now(timezone.utc)
        self.records.table("users").where(id=principal.id).update(
            {"last_login_at": now, "last_login_ip": ip_addr}
        )
        principal.last_login_at = now
        principal.last_login_ip = ip_addr

    # -- remember-me ------------------------------------------------------

    @staticmethod
    def _digest(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def update_remember_token(self, principal: Principal, token: Optional[str]) -> None:
        digest = self._digest(token) if token else None
        self.records.table("users").where(id=principal.id).update({"remember_token": digest})
        principal.remember_token = digest

    def retrieve_by_remember_token(self, principal_id: Any, token: str) -> Optional[Principal]:
        principal = self.retrieve_by_id(principal_id)
        if not principal or not principal.remember_token or not token:
            return None
        if not hmac.compare_digest(principal.remember_token, self._digest(token)):
            return None
        return principal

    # -- tenants ----------------------------------------------------------

    def create_tenant(self, code: str, name: str = "", *, tenant_id: Any = None) -> Tenant:
        row = self.records.table("tenants").insert(
            {"id": normalize_id(tenant_id), "code": code, "name": name, "is_active": True}
        )
        return Tenant(id=row["id"], code=row["code"], name=row["name"], is_active=True)

    def get_tenant(self, tenant_id: Any) -> Optional[Tenant]:
        row = self.records.table("tenants").where(id=tenant_id).first()
        if not row:
            return None
        return Tenant(
            id=str(row["id"]),
            code=row["code"],
            name=row.get("name", ""),
            is_active=bool(row.get("is_active", True)),
        )

    def is_member(self, principal_id: Any, tenant_id: Any) -> bool:
        tenant = self.get_tenant(tenant_id)
        if tenant is None or not tenant.is_active:
            return False
        membership = (
            self.records.table("user_tenants")
            .where(user_id=principal_id, tenant_id=tenant_id, is_active=True)
            .first()
        )
        return membership is not None

    def email_exists_in_tenant(self, email: str, tenant_id: Any) -> bool:
        row = self.records.table("users").where(email=_normalize_email(email)).first()
        if not row:
            return False
        membership = (
            self.records.table("user_tenants")
            .where(user_id=row["id"], tenant_id=tenant_id, is_active=True)
            .first()
        )
        return membership is not None

    def assign_to_tenant(self, principal_id: Any, tenant_id: Any) -> None:
        query = self.records.table("user_tenants").where(
            user_id=principal_id, tenant_id=tenant_id
        )
        if not query.update({"is_active": True}):
            self.records.table("user_tenants").insert(
                {
                    "user_id": normalize_id(principal_id),
                    "tenant_id": normalize_id(tenant_id),
                    "is_active": True,
                }
            )

    def remove_from_tenant(self, principal_id: Any, tenant_id: Any) -> None:
        self.records.table("user_tenants").where(
            user_id=principal_id, tenant_id=tenant_id
        ).update({"is_active": False})
        self.records.table("user_roles").where(
            user_id=principal_id, tenant_id=tenant_id
        ).delete()
        self.records.table("user_permissions").where(
            user_id=principal_id, tenant_id=tenant_id
        ).delete()

    # -- roles & permissions ----------------------------------------------

    def create_permission(self, name: str, module: Optional[str] = None) -> Permission:
        existing = self.records.table("permissions").where(name=name).first()
        if existing:
            return self._to_permission(existing)
        row = self.records.table("permissions").insert(
            {"name": name, "module": module or name.split(".", 1)[0], "is_active": True}
        )
        return self._to_permission(row)

    def create_role(
        self, tenant_id: Any, name: str, permissions: Iterable[str] = ()
    ) -> Role:
        row = self.records.table("roles").insert(
            {"tenant_id": normalize_id(tenant_id), "name": name, "is_active": True}
        )
        for permission_name in permissions:
            permission = self.create_permission(permission_name)
            self.records.table("role_permissions").insert(
                {"role_id": row["id"], "permission_id": permission.id}
            )
        return self._to_role(row)

    def _find_role(self, tenant_id: Any, role: Any) -> Dict[str, Any]:
        table = self.records.table("roles").where(tenant_id=tenant_id)
        row = table.where(name=role).first() or table.where(id=role).first()
        if not row:
            raise NotFoundError("role not found in tenant")
        return row

    def assign_role(self, principal_id: Any, role: Any, tenant_id: Any) -> None:
        role_row = self._find_role(tenant_id, role)
        if not self.is_member(principal_id, tenant_id):
            raise ValidationError("principal is not a member of the tenant")
        exists = (
            self.records.table("user_roles")
            .where(user_id=principal_id, role_id=role_row["id"], tenant_id=tenant_id)
            .first()
        )
        if not exists:
            self.records.table("user_roles").insert(
                {
                    "user_id": normalize_id(principal_id),
                    "role_id": role_row["id"],
                    "tenant_id": normalize_id(tenant_id),
                }
            )

    def remove_role(self, principal_id: Any, role: Any, tenant_id: Any) -> None:
        role_row = self._find_role(tenant_id, role)
        self.records.table("user_roles").where(
            user_id=principal_id, role_id=role_row["id"], tenant_id=tenant_id
        ).delete()

    def grant_permission(self, principal_id: Any, permission_name: str, tenant_id: Any) -> None:
        permission = self.create_permission(permission_name)
        exists = (
            self.records.table("user_permissions")
            .where(user_id=principal_id, permission_id=permission.id, tenant_id=tenant_id)
            .first()
        )
        if not exists:
            self.records.table("user_permissions").insert(
                {
                    "user_id": normalize_id(principal_id),
                    "permission_id": permission.id,
                    "tenant_id": normalize_id(tenant_id),
                }
            )

    def roles_for(self, principal_id: Any, tenant_id: Any) -> List[Role]:
        links = (
            self.records.table("user_roles")
            .where(user_id=principal_id, tenant_id=tenant_id)
            .get()
        )
        if not links:
            return []
        rows = (
            self.records.table("roles")
            .where(id__in=[link["role_id"] for link in links], tenant_id=tenant_id, is_active=True)
            .get()
        )
        return [self._to_role(row) for row in rows]

    def role_permissions(self, role_ids: Iterable[Any]) -> List[Permission]:
        ids = list(role_ids)
        if not ids:
            return []
        links = self.records.table("role_permissions").where(role_id__in=ids).get()
        return self._active_permissions(link["permission_id"] for link in links)

    def direct_permissions(self, principal_id: Any, tenant_id: Any) -> List[Permission]:
        links = (
            self.records.table("user_permissions")
            .where(user_id=principal_id, tenant_id=tenant_id)
            .get()
        )
        return self._active_permissions(link["permission_id"] for link in links)

    def _active_permissions(self, permission_ids: Iterable[Any]) -> List[Permission]:
        ids = list(permission_ids)
        if not ids:
            return []
        rows = self.records.table("permissions").where(id__in=ids, is_active=True).get()
        return [self._to_permission(row) for row in rows]

    @staticmethod
    def _to_role(row: Dict[str, Any]) -> Role:
        return Role(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            name=row["name"],
            is_active=bool(row.get("is_active", True)),
        )

    @staticmethod
    def _to_permission(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=str(row["id"]),
            name=row["name"],
            module=row.get("module"),
            is_active=bool(row.get("is_active", True)),
        )
