from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    # strip zero-width characters before normalizing
    cleaned = "".join(c for c in value if c not in "​‌‍﻿")
    normalized = unicodedata.normalize("NFKC", cleaned.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValueError("invalid email address")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=64)
    remember: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TwoFactorVerifyRequest(BaseModel):
    temp_token: str = Field(..., max_length=2048)
    code: str = Field(..., min_length=6, max_length=16)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class PasswordForgotRequest(BaseModel):
    email: str
    tenant_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetRequest(BaseModel):
    token: str = Field(..., max_length=2048)
    password: str = Field(..., min_length=8, max_length=128)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    expires_at: datetime
    scopes: List[str] = Field(default_factory=list)


class LoginResponse(BaseModel):
    status: Literal["authenticated", "two_factor_required"]
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    tokens: Optional[TokenPairResponse] = None
    session_id: Optional[str] = None
    session_expires_at: Optional[datetime] = None
    temp_token: Optional[str] = None
    expires_in: Optional[int] = None
    must_change_password: bool = False


class PrincipalResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    tenant_id: str
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    two_factor_enabled: bool = False
    must_change_password: bool = False


class TwoFactorEnableResponse(BaseModel):
    secret: str
    formatted_secret: str
    backup_codes: List[str]
    otpauth_uri: str


class TwoFactorStatusResponse(BaseModel):
    state: Literal["unset", "pending", "active"]
    backup_codes_remaining: int = 0
