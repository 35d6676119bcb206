from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from tenantguard.config import ALLOWED_ALGORITHMS, MIN_SIGNING_KEY_LENGTH, Settings
from tenantguard.logging import get_logger
from tenantguard.service.errors import AuthenticationError, ConfigurationError
from tenantguard.storage.common import TTLCache
from tenantguard.storage.models import Token, TokenClaims, TokenPair, TokenType

logger = get_logger(__name__)

_DIGESTS = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}

REVOKED_KEY = "auth:revoked:{jti}"


class _InvalidToken(Exception):
    """Internal failure reason; always collapsed to one AuthenticationError."""


class TokenService:
    """Issues and verifies HMAC-signed compact tokens with a revocation index.

    Tokens are three base64url segments (``header.payload.signature``). The
    signing algorithm comes from settings and must be on the allow-list; the
    algorithm named in an incoming header is only compared against it, never
    used to pick the digest.
    """

    def __init__(
        self,
        settings: Settings,
        cache: TTLCache,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        secret = settings.jwt_secret or ""
        if len(secret) < MIN_SIGNING_KEY_LENGTH:
            raise ConfigurationError("signing key is shorter than the minimum length")
        if settings.jwt_algorithm not in _DIGESTS:
            raise ConfigurationError(f"unsupported signing algorithm: {settings.jwt_algorithm}")
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._key = secret.encode()
        self._algorithm = settings.jwt_algorithm
        self._leeway = settings.jwt_leeway_seconds

    def _now(self) -> int:
        return int(self._clock())

    def _default_ttl(self, token_type: str) -> int:
        return {
            TokenType.ACCESS.value: self.settings.access_token_ttl_seconds,
            TokenType.REFRESH.value: self.settings.refresh_token_ttl_seconds,
            TokenType.TWO_FACTOR.value: self.settings.two_factor_token_ttl_seconds,
            TokenType.PASSWORD_RESET.value: self.settings.password_reset_ttl_seconds,
        }.get(token_type, self.settings.access_token_ttl_seconds)

    def _max_lifetime(self) -> int:
        return max(self._default_ttl(kind.value) for kind in TokenType) + self._leeway

    # -- encoding ---------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self._key, signing_input.encode(), _DIGESTS[self._algorithm]
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": self._algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    # -- issuing ----------------------------------------------------------

    def issue(
        self,
        claims: Mapping[str, Any],
        *,
        token_type: TokenType | str = TokenType.ACCESS,
        ttl: Optional[int] = None,
    ) -> Token:
        """Sign a new token for ``claims`` (which must carry sub and tenant_id)."""
        if not claims.get("sub") or claims.get("tenant_id") in (None, ""):
            raise ValueError("token claims require sub and tenant_id")
        kind = token_type.value if isinstance(token_type, TokenType) else str(token_type)
        now = self._now()
        lifetime = self._default_ttl(kind) if ttl is None else int(ttl)
        payload = {k: v for k, v in claims.items() if v is not None}
        payload.update(
            {
                "iss": self.settings.jwt_issuer,
                "sub": str(claims["sub"]),
                "tenant_id": str(claims["tenant_id"]),
                "iat": now,
                "nbf": int(claims.get("nbf") or now),
                "exp": now + lifetime,
                "jti": secrets.token_hex(16),
                "type": kind,
            }
        )
        if self.settings.jwt_audience:
            payload["aud"] = self.settings.jwt_audience
        return Token(value=self._encode(payload), claims=TokenClaims.from_payload(payload))

    def issue_pair(
        self,
        subject: str,
        tenant_id: str,
        *,
        extra: Optional[Mapping[str, Any]] = None,
        scopes: Optional[list[str]] = None,
    ) -> TokenPair:
        base = dict(extra or {})
        base.update({"sub": subject, "tenant_id": tenant_id})
        access = self.issue(base, token_type=TokenType.ACCESS)
        refresh = self.issue(base, token_type=TokenType.REFRESH)
        return TokenPair(
            access_token=access.value,
            refresh_token=refresh.value,
            expires_in=self.settings.access_token_ttl_seconds,
            expires_at=datetime.fromtimestamp(access.claims.exp, tz=timezone.utc),
            scopes=list(scopes or []),
        )

    def issue_two_factor_token(self, subject: str, tenant_id: str, **extra: Any) -> Token:
        """Temporary token for a login that still owes a second factor."""
        return self.issue(
            {**extra, "sub": subject, "tenant_id": tenant_id}, token_type=TokenType.TWO_FACTOR
        )

    def issue_password_reset_token(self, subject: str, tenant_id: str) -> Token:
        return self.issue(
            {"sub": subject, "tenant_id": tenant_id}, token_type=TokenType.PASSWORD_RESET
        )

    # -- verification -----------------------------------------------------

    def parse(self, token: str) -> Optional[Dict[str, Any]]:
        """Decode the payload without checking the signature."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, AttributeError):
            return None
        return payload if isinstance(payload, dict) else None

    def _check(self, token: str, expected_type: Optional[str]) -> Dict[str, Any]:
        if not isinstance(token, str):
            raise _InvalidToken("not_a_string")
        parts = token.split(".")
        if len(parts) != 3:
            raise _InvalidToken("malformed")
        header_b64, payload_b64, sig_b64 = parts
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise _InvalidToken("header_decode_failed") from exc
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg not in ALLOWED_ALGORITHMS or alg != self._algorithm:
            raise _InvalidToken("algorithm_not_allowed")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise _InvalidToken("bad_signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            raise _InvalidToken("payload_decode_failed") from exc
        if not isinstance(payload, dict):
            raise _InvalidToken("payload_not_object")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise _InvalidToken("wrong_issuer")
        if self.settings.jwt_audience and payload.get("aud") != self.settings.jwt_audience:
            raise _InvalidToken("wrong_audience")
        try:
            exp = int(payload["exp"])
            nbf = int(payload.get("nbf", payload.get("iat", 0)))
        except (KeyError, TypeError, ValueError) as exc:
            raise _InvalidToken("missing_time_claims") from exc
        now = self._now()
        if now >= exp + self._leeway:
            raise _InvalidToken("expired")
        if now + self._leeway < nbf:
            raise _InvalidToken("not_yet_valid")
        if expected_type and payload.get("type") != expected_type:
            raise _InvalidToken("wrong_type")
        for required in ("sub", "tenant_id", "jti"):
            if not payload.get(required):
                raise _InvalidToken(f"missing_{required}")
        return payload

    async def verify(
        self, token: str, *, expected_type: TokenType | str | None = None
    ) -> TokenClaims:
        """Return the token's claims or raise a generic ``AuthenticationError``."""
        kind = expected_type.value if isinstance(expected_type, TokenType) else expected_type
        try:
            payload = self._check(token, kind)
            if await self.is_revoked(payload["jti"]):
                raise _InvalidToken("revoked")
            return TokenClaims.from_payload(payload)
        except _InvalidToken as exc:
            logger.info("token_rejected", reason=str(exc), expected_type=kind)
            raise AuthenticationError("invalid token") from None
        except (KeyError, TypeError, ValueError) as exc:
            logger.info("token_rejected", reason="claims_invalid", error=str(exc))
            raise AuthenticationError("invalid token") from None

    # -- revocation -------------------------------------------------------

    def remaining_ttl(self, token: str) -> int:
        payload = self.parse(token) or {}
        try:
            return max(0, int(payload.get("exp", 0)) - self._now())
        except (TypeError, ValueError):
            return 0

    async def revoke(self, token: str) -> bool:
        """Denylist ``token`` until it would have expired anyway.

        Only tokens signed with this service's key are accepted. Returns False
        when there was nothing to revoke (forged, malformed, expired or already
        revoked), so repeated calls are harmless.
        """
        try:
            payload = self._check(token, None)
        except _InvalidToken as exc:
            logger.info("token_revoke_skipped", reason=str(exc))
            return False
        ttl = min(int(payload["exp"]) + self._leeway - self._now(), self._max_lifetime())
        if ttl <= 0:
            return False
        added = await self.cache.add(REVOKED_KEY.format(jti=payload["jti"]), "1", ttl)
        if added:
            logger.info("token_revoked", jti=payload["jti"], token_type=payload.get("type"))
        return added

    async def is_revoked(self, jti: str) -> bool:
        return await self.cache.exists(REVOKED_KEY.format(jti=jti))

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token into a brand-new pair.

        The old refresh token is revoked with a set-if-absent write before the
        new pair is issued, so of two concurrent refreshes only one succeeds.
        """
        claims = await self.verify(refresh_token, expected_type=TokenType.REFRESH)
        ttl = max(1, claims.exp - self._now())
        if not await self.cache.add(REVOKED_KEY.format(jti=claims.jti), "1", ttl):
            logger.warning("refresh_token_replay", jti=claims.jti, sub=claims.sub)
            raise AuthenticationError("invalid token")
        return self.issue_pair(claims.sub, claims.tenant_id, extra=claims.extra)
