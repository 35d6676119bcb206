from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Tenant:
    id: str
    code: str
    name: str = ""
    is_active: bool = True


@dataclass
class Principal:
    """Authenticated identity as seen by guards and the RBAC resolver."""

    id: str
    email: str
    tenant_id: str
    password_hash: Optional[str] = None
    name: Optional[str] = None
    is_active: bool = True
    tenants: Dict[str, bool] = field(default_factory=dict)
    remember_token: Optional[str] = None
    must_change_password: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None

    def belongs_to(self, tenant_id: Optional[str]) -> bool:
        if tenant_id is None:
            return False
        key = str(tenant_id)
        if key == str(self.tenant_id):
            return True
        return bool(self.tenants.get(key))


@dataclass
class Role:
    id: str
    tenant_id: str
    name: str
    is_active: bool = True


@dataclass
class Permission:
    id: str
    name: str
    module: Optional[str] = None
    is_active: bool = True


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    TWO_FACTOR = "two_factor"
    PASSWORD_RESET = "password_reset"


_RESERVED_CLAIMS = {"sub", "tenant_id", "iat", "nbf", "exp", "jti", "type", "iss", "aud"}


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    tenant_id: str
    iat: int
    nbf: int
    exp: int
    jti: str
    type: str
    iss: str
    aud: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        return cls(
            sub=str(payload["sub"]),
            tenant_id=str(payload["tenant_id"]),
            iat=int(payload["iat"]),
            nbf=int(payload["nbf"]),
            exp=int(payload["exp"]),
            jti=str(payload["jti"]),
            type=str(payload["type"]),
            iss=str(payload["iss"]),
            aud=payload.get("aud"),
            extra={k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS},
        )


@dataclass(frozen=True)
class Token:
    value: str
    claims: TokenClaims


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: datetime
    token_type: str = "Bearer"
    scopes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "expires_at": self.expires_at.isoformat(),
            "scopes": list(self.scopes),
        }


class TwoFactorState(str, Enum):
    UNSET = "unset"
    PENDING = "pending"
    ACTIVE = "active"


@dataclass
class TwoFactorCredential:
    """Stored enrollment: encrypted secret plus digests of unused backup codes."""

    user_id: str
    secret: str
    backup_codes: List[str] = field(default_factory=list)
    confirmed: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    confirmed_at: Optional[datetime] = None

    @property
    def state(self) -> TwoFactorState:
        return TwoFactorState.ACTIVE if self.confirmed else TwoFactorState.PENDING

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TwoFactorCredential":
        return cls(
            user_id=str(row["user_id"]),
            secret=row["secret"],
            backup_codes=list(row.get("backup_codes") or []),
            confirmed=bool(row.get("confirmed")),
            created_at=row.get("created_at") or _utcnow(),
            confirmed_at=row.get("confirmed_at"),
        )


@dataclass
class TwoFactorEnrollment:
    """Material shown to the user once, right after enabling 2FA."""

    secret: str
    backup_codes: List[str]
    otpauth_uri: str

    @property
    def formatted_secret(self) -> str:
        return " ".join(self.secret[i : i + 4] for i in range(0, len(self.secret), 4))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "secret": self.secret,
            "formatted_secret": self.formatted_secret,
            "backup_codes": list(self.backup_codes),
            "otpauth_uri": self.otpauth_uri,
        }


@dataclass
class Session:
    id: str
    user_id: str
    tenant_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        tenant_id: str,
        ttl_seconds: int,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or _utcnow()
        return cls(
            id=uuid.uuid4().hex,
            user_id=user_id,
            tenant_id=tenant_id,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "user_agent": self.user_agent,
            "ip_addr": self.ip_addr,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            tenant_id=data["tenant_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )



@dataclass
class AuditEvent:
    name: str
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    def to_row(self) -> Dict[str, Any]:
        return {
            "event": self.name,
            "tenant_id": self.context.get("tenant_id"),
            "user_id": self.context.get("user_id"),
            "context": dict(self.context),
            "created_at": self.created_at.isoformat(),
        }
