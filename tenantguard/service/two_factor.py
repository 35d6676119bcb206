from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional
from urllib.parse import quote, urlencode

from cryptography.fernet import Fernet, InvalidToken

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.errors import ConfigurationError, ConflictError
from tenantguard.storage.common import RecordStore
from tenantguard.storage.models import (
    Principal,
    TwoFactorCredential,
    TwoFactorEnrollment,
    TwoFactorState,
)

logger = get_logger(__name__)

_TABLE = "two_factor"
# concurrent consumers of the same code list; each retry re-reads the row
_MAX_CONSUME_RETRIES = 3


class TwoFactorService:
    """TOTP enrollment and verification with single-use backup codes.

    Lifecycle per principal: ``UNSET -> PENDING`` on enable, ``PENDING ->
    ACTIVE`` on confirm and back to ``UNSET`` on disable. Secrets are
    Fernet-encrypted at rest and backup codes are kept only as SHA-256
    digests.
    """

    def __init__(
        self,
        records: RecordStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.records = records
        self.settings = settings
        self._clock = clock
        self._cipher = self._build_cipher(settings.mfa_secret_key or settings.jwt_secret)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: Optional[str]) -> Fernet:
        if not key_material:
            raise ConfigurationError("no key material for two-factor secret encryption")
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt(self, secret: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.warning("two_factor_secret_decrypt_failed")
            return None

    @staticmethod
    def _digest_code(code: str) -> str:
        return hashlib.sha256(code.encode()).hexdigest()

    @staticmethod
    def _normalize(code: Any) -> str:
        if not isinstance(code, str):
            code = str(code or "")
        return code.replace(" ", "").replace("-", "").strip().upper()

    def _load(self, principal: Principal) -> Optional[TwoFactorCredential]:
        row = self.records.table(_TABLE).where(user_id=principal.id).first()
        return TwoFactorCredential.from_row(row) if row else None

    # -- TOTP -------------------------------------------------------------

    def generate_code(self, secret: str, timestamp: Optional[float] = None) -> str:
        """Return the TOTP code for ``secret`` at ``timestamp`` (default: now)."""
        at = self._clock() if timestamp is None else timestamp
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(at // self.settings.two_factor_period).to_bytes(8, "big")
        # SHA1 is what authenticator apps implement for otpauth URIs
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        digits = self.settings.two_factor_digits
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**digits
        )
        return str(code_int).zfill(digits)

    def _verify_totp(self, secret: str, code: str) -> bool:
        if not code.isdigit() or len(code) != self.settings.two_factor_digits:
            return False
        now = self._clock()
        window = self.settings.two_factor_window
        matched = False
        for step in range(-window, window + 1):
            generated = self.generate_code(
                secret, now + step * self.settings.two_factor_period
            )
            # evaluate every step so timing does not reveal which one matched
            if generated and hmac.compare_digest(generated, code):
                matched = True
        return matched

    def _otpauth_uri(self, principal: Principal, secret: str) -> str:
        issuer = self.settings.two_factor_issuer
        label = quote(f"{issuer}:{principal.email}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": self.settings.two_factor_digits,
                "period": self.settings.two_factor_period,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"

    def _new_backup_codes(self) -> List[str]:
        codes: List[str] = []
        while len(codes) < self.settings.backup_code_count:
            code = secrets.token_hex(4).upper()
            if code not in codes:
                codes.append(code)
        return codes

    # -- lifecycle --------------------------------------------------------

    def state(self, principal: Principal) -> TwoFactorState:
        credential = self._load(principal)
        return credential.state if credential else TwoFactorState.UNSET

    def is_enabled(self, principal: Principal) -> bool:
        return self.state(principal) is TwoFactorState.ACTIVE

    def enable(self, principal: Principal) -> TwoFactorEnrollment:
        """Start enrollment; a pending enrollment is replaced, an active one is kept."""
        if self.is_enabled(principal):
            raise ConflictError("two-factor authentication is already active")
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        backup_codes = self._new_backup_codes()
        self.records.table(_TABLE).where(user_id=principal.id).delete()
        self.records.table(_TABLE).insert(
            {
                "user_id": principal.id,
                "secret": self._encrypt(secret),
                "backup_codes": [self._digest_code(code) for code in backup_codes],
                "confirmed": False,
                "created_at": datetime.now(timezone.utc),
                "confirmed_at": None,
            }
        )
        logger.info("two_factor_enrollment_started", user_id=principal.id)
        return TwoFactorEnrollment(
            secret=secret,
            backup_codes=backup_codes,
            otpauth_uri=self._otpauth_uri(principal, secret),
        )

    def confirm(self, principal: Principal, code: Any) -> bool:
        credential = self._load(principal)
        if not credential or credential.confirmed:
            return False
        secret = self._decrypt(credential.secret)
        if not secret or not self._verify_totp(secret, self._normalize(code)):
            logger.info("two_factor_confirm_failed", user_id=principal.id)
            return False
        updated = (
            self.records.table(_TABLE)
            .where(user_id=principal.id, confirmed=False)
            .update({"confirmed": True, "confirmed_at": datetime.now(timezone.utc)})
        )
        if updated:
            logger.info("two_factor_enabled", user_id=principal.id)
        return bool(updated)

    def verify(self, principal: Principal, code: Any) -> bool:
        """Accept a current TOTP code or consume one backup code."""
        credential = self._load(principal)
        if not credential or not credential.confirmed:
            return False
        normalized = self._normalize(code)
        if not normalized:
            return False
        secret = self._decrypt(credential.secret)
        if secret and self._verify_totp(secret, normalized):
            return True
        return self._consume_backup_code(principal, credential, normalized)

    def _consume_backup_code(
        self, principal: Principal, credential: TwoFactorCredential, code: str
    ) -> bool:
        digest = self._digest_code(code)
        for _ in range(_MAX_CONSUME_RETRIES):
            current = list(credential.backup_codes)
            match = None
            for stored in current:
                if hmac.compare_digest(stored, digest):
                    match = stored
            if match is None:
                return False
            remaining = [stored for stored in current if stored != match]
            # conditional write: succeeds only if nobody consumed a code meanwhile
            updated = (
                self.records.table(_TABLE)
                .where(user_id=principal.id, backup_codes=current)
                .update({"backup_codes": remaining})
            )
            if updated:
                logger.info(
                    "two_factor_backup_code_used",
                    user_id=principal.id,
                    remaining=len(remaining),
                )
                return True
            credential = self._load(principal)
            if not credential:
                return False
        logger.warning("two_factor_backup_code_contention", user_id=principal.id)
        return False

    def remaining_backup_codes(self, principal: Principal) -> int:
        credential = self._load(principal)
        return len(credential.backup_codes) if credential else 0

    def disable(self, principal: Principal) -> bool:
        removed = self.records.table(_TABLE).where(user_id=principal.id).delete()
        if removed:
            logger.info("two_factor_disabled", user_id=principal.id)
        return bool(removed)
