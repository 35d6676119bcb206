"""Tests for the login state machine and both guard strategies."""

import asyncio
import base64
import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import PASSWORD, RecordingAudit, make_settings, seed
from tenantguard.config import GuardDriver
from tenantguard.service.context import build_container
from tenantguard.service.errors import AuthenticationError
from tenantguard.service.guards import (
    SESSION_KEY,
    Authenticated,
    Rejected,
    RejectReason,
    SessionGuard,
    TokenGuard,
    TwoFactorRequired,
    guard_class_for,
)
from tenantguard.service.tokens import REVOKED_KEY
from tenantguard.storage.memory import MemoryCache, MemoryRecordStore
from tenantguard.storage.models import TokenType

ORIGIN = "10.0.0.1"


def _credentials(email="admin@acme.test", password=PASSWORD, **extra):
    return {"email": email, "password": password, **extra}


def _enable_two_factor(container, principal):
    enrollment = container.two_factor.enable(principal)
    container.two_factor.confirm(principal, container.two_factor.generate_code(enrollment.secret))
    return enrollment


class TestGuardFactory:
    def test_driver_selects_strategy(self):
        assert guard_class_for(GuardDriver.TOKEN) is TokenGuard
        assert guard_class_for("session") is SessionGuard

    def test_container_builds_configured_guard(self, container):
        guard = container.guard(authorization="Bearer abc")
        assert isinstance(guard, TokenGuard)

    def test_extract_bearer(self):
        assert TokenGuard.extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
        assert TokenGuard.extract_bearer("bearer   xyz") == "xyz"
        assert TokenGuard.extract_bearer("Basic dXNlcjpwYXNz") is None
        assert TokenGuard.extract_bearer(None) is None


class TestTokenLogin:
    async def test_correct_login_without_two_factor(self, container, seeded):
        guard = container.guard(origin=ORIGIN)

        result = await guard.authenticate(_credentials())

        assert isinstance(result, Authenticated)
        assert result.principal.id == seeded.admin.id
        assert result.tenant_id == "1"
        assert result.tokens.access_token
        assert await guard.check() is True

    async def test_bearer_resolves_principal(self, container, seeded):
        result = await container.guard().authenticate(_credentials())
        guard = container.guard(authorization=f"Bearer {result.tokens.access_token}")

        principal = await guard.user()

        assert principal.id == seeded.admin.id
        assert guard.tenant_id == "1"
        assert guard.claims.type == TokenType.ACCESS.value

    async def test_no_credential_means_no_user(self, container, seeded):
        guard = container.guard()
        assert await guard.user() is None
        assert await guard.check() is False

    async def test_wrong_password(self, container, seeded):
        result = await container.guard().authenticate(_credentials(password="wrong"))
        assert result == Rejected(RejectReason.INVALID_CREDENTIALS)

    async def test_unknown_account_looks_like_wrong_password(self, container, seeded):
        result = await container.guard().authenticate(_credentials(email="ghost@acme.test"))
        assert result == Rejected(RejectReason.INVALID_CREDENTIALS)

    async def test_inactive_account(self, container, seeded):
        container.records.table("users").where(id=seeded.seller.id).update({"is_active": False})
        result = await container.guard().authenticate(_credentials(email="seller@acme.test"))
        assert result == Rejected(RejectReason.INACTIVE)

    async def test_tenant_outside_membership_rejected(self, container, seeded):
        result = await container.guard().authenticate(_credentials(tenant_id=2))
        assert isinstance(result, Rejected)
        assert result.reason is RejectReason.INVALID_CREDENTIALS

    async def test_login_into_secondary_tenant(self, container, seeded):
        container.credentials.assign_to_tenant(seeded.admin.id, 2)
        result = await container.guard().authenticate(_credentials(tenant_id=2))

        claims = await container.tokens.verify(result.tokens.access_token)
        assert claims.tenant_id == "2"

    async def test_attempt_reports_success(self, container, seeded):
        guard = container.guard()
        assert await guard.attempt(_credentials()) is True
        assert await container.guard().attempt(_credentials(password="bad")) is False

    async def test_successful_login_is_audited(self, container, seeded, audit):
        await container.guard(origin=ORIGIN).authenticate(_credentials())
        success = [ctx for name, ctx in audit.events if name == "login_success"]
        assert success == [{"user_id": seeded.admin.id, "tenant_id": "1", "ip": ORIGIN}]
        row = container.credentials.retrieve_by_id(seeded.admin.id)
        assert row.last_login_ip == ORIGIN


class TestLockout:
    async def test_sixth_attempt_locked_even_with_correct_password(self, container, seeded):
        """Five wrong passwords lock the account for the window."""
        for _ in range(5):
            result = await container.guard(origin=ORIGIN).authenticate(
                _credentials(password="wrong")
            )
            assert result.reason is RejectReason.INVALID_CREDENTIALS

        result = await container.guard(origin=ORIGIN).authenticate(_credentials())

        assert isinstance(result, Rejected)
        assert result.reason is RejectReason.LOCKED_OUT
        assert result.retry_after == 900

    async def test_lockout_expires(self, container, seeded, clock):
        for _ in range(5):
            await container.guard().authenticate(_credentials(password="wrong"))
        clock.advance(900)
        assert isinstance(await container.guard().authenticate(_credentials()), Authenticated)

    async def test_success_resets_failures(self, container, seeded):
        for _ in range(4):
            await container.guard().authenticate(_credentials(password="wrong"))
        await container.guard().authenticate(_credentials())
        for _ in range(4):
            await container.guard().authenticate(_credentials(password="wrong"))
        assert isinstance(await container.guard().authenticate(_credentials()), Authenticated)

    async def test_lockout_is_per_identity(self, container, seeded):
        for _ in range(5):
            await container.guard().authenticate(_credentials(password="wrong"))
        result = await container.guard().authenticate(_credentials(email="seller@acme.test"))
        assert isinstance(result, Authenticated)


class TestTwoFactorLogin:
    async def test_password_then_code(self, container, seeded):
        enrollment = _enable_two_factor(container, seeded.admin)

        challenge = await container.guard().authenticate(_credentials())
        assert isinstance(challenge, TwoFactorRequired)
        assert challenge.expires_in == 300

        code = container.two_factor.generate_code(enrollment.secret)
        result = await container.guard().complete_two_factor(challenge.temp_token, code)

        assert isinstance(result, Authenticated)
        assert result.tenant_id == "1"
        assert result.tokens is not None

    async def test_temporary_token_is_not_an_access_token(self, container, seeded):
        _enable_two_factor(container, seeded.admin)
        challenge = await container.guard().authenticate(_credentials())
        guard = container.guard(authorization=f"Bearer {challenge.temp_token}")
        assert await guard.user() is None

    async def test_temporary_token_is_single_use(self, container, seeded):
        enrollment = _enable_two_factor(container, seeded.admin)
        challenge = await container.guard().authenticate(_credentials())
        code = container.two_factor.generate_code(enrollment.secret)

        await container.guard().complete_two_factor(challenge.temp_token, code)
        replay = await container.guard().complete_two_factor(challenge.temp_token, code)

        assert replay == Rejected(RejectReason.INVALID_TOKEN)

    async def test_wrong_code(self, container, seeded):
        _enable_two_factor(container, seeded.admin)
        challenge = await container.guard().authenticate(_credentials())
        result = await container.guard().complete_two_factor(challenge.temp_token, "ZZZZZZ")
        assert result == Rejected(RejectReason.INVALID_CODE)

    async def test_expired_challenge(self, container, seeded, clock):
        enrollment = _enable_two_factor(container, seeded.admin)
        challenge = await container.guard().authenticate(_credentials())
        clock.advance(300)
        code = container.two_factor.generate_code(enrollment.secret)
        result = await container.guard().complete_two_factor(challenge.temp_token, code)
        assert result == Rejected(RejectReason.INVALID_TOKEN)

    async def test_backup_code_cannot_be_reused(self, container, seeded):
        enrollment = _enable_two_factor(container, seeded.admin)
        backup = enrollment.backup_codes[0]

        first = await container.guard().authenticate(_credentials())
        assert isinstance(
            await container.guard().complete_two_factor(first.temp_token, backup), Authenticated
        )
        second = await container.guard().authenticate(_credentials())
        result = await container.guard().complete_two_factor(second.temp_token, backup)
        assert result == Rejected(RejectReason.INVALID_CODE)

    async def test_code_guessing_is_rate_limited(self, container, seeded):
        _enable_two_factor(container, seeded.admin)
        challenge = await container.guard().authenticate(_credentials())
        for _ in range(5):
            await container.guard().complete_two_factor(challenge.temp_token, "ZZZZZZ")
        result = await container.guard().complete_two_factor(challenge.temp_token, "ZZZZZZ")
        assert result.reason is RejectReason.LOCKED_OUT


class TestTokenLifecycle:
    async def test_logout_twice_never_raises(self, container, seeded, audit):
        result = await container.guard().authenticate(_credentials())
        guard = container.guard(authorization=f"Bearer {result.tokens.access_token}")

        await guard.logout(refresh_token=result.tokens.refresh_token)
        await guard.logout(refresh_token=result.tokens.refresh_token)

        assert audit.names().count("logout") == 1
        stale = container.guard(authorization=f"Bearer {result.tokens.access_token}")
        assert await stale.user() is None
        with pytest.raises(AuthenticationError):
            await container.tokens.verify(result.tokens.refresh_token)

    async def test_logout_without_credentials(self, container):
        await container.guard().logout()

    async def test_refresh_once(self, container, seeded):
        result = await container.guard().authenticate(_credentials())
        guard = container.guard()

        rotated = await guard.refresh(result.tokens.refresh_token)
        assert rotated.refresh_token != result.tokens.refresh_token

        with pytest.raises(AuthenticationError):
            await container.guard().refresh(result.tokens.refresh_token)

    async def test_refresh_for_deactivated_principal(self, container, seeded):
        result = await container.guard().authenticate(_credentials())
        container.records.table("users").where(id=seeded.admin.id).update({"is_active": False})
        with pytest.raises(AuthenticationError):
            await container.guard().refresh(result.tokens.refresh_token)

    async def test_deactivated_principal_loses_access(self, container, seeded):
        result = await container.guard().authenticate(_credentials())
        container.records.table("users").where(id=seeded.admin.id).update({"is_active": False})
        guard = container.guard(authorization=f"Bearer {result.tokens.access_token}")
        assert await guard.user() is None

    async def test_expired_access_token(self, container, seeded, clock, settings):
        result = await container.guard().authenticate(_credentials())
        clock.advance(settings.access_token_ttl_seconds)
        guard = container.guard(authorization=f"Bearer {result.tokens.access_token}")
        assert await guard.check() is False


@pytest.fixture
def session_container(clock, hasher):
    container = build_container(
        make_settings(auth_guard="session"),
        records=MemoryRecordStore(),
        cache=MemoryCache(clock=clock),
        audit=RecordingAudit(),
        hasher=hasher,
        clock=clock,
    )
    seed(container)
    return container


class TestSessionGuard:
    async def test_login_creates_server_side_session(self, session_container):
        guard = session_container.guard(origin=ORIGIN, user_agent="pytest")
        assert isinstance(guard, SessionGuard)

        result = await guard.authenticate(_credentials())

        assert isinstance(result, Authenticated)
        assert result.tokens is None
        assert result.session.ip_addr == ORIGIN
        assert await session_container.cache.exists(
            SESSION_KEY.format(session_id=result.session.id)
        )

    async def test_session_id_resolves_principal(self, session_container):
        result = await session_container.guard().authenticate(_credentials())
        guard = session_container.guard(session_id=result.session.id)

        assert (await guard.user()).email == "admin@acme.test"
        assert guard.tenant_id == "1"

    async def test_login_regenerates_session_id(self, session_container):
        guard = session_container.guard(session_id="attacker-chosen")
        result = await guard.authenticate(_credentials())
        assert result.session.id != "attacker-chosen"

    async def test_session_expires(self, session_container, clock):
        result = await session_container.guard().authenticate(_credentials())
        clock.advance(session_container.settings.session_ttl_seconds)
        guard = session_container.guard(session_id=result.session.id)
        assert await guard.user() is None

    async def test_logout_is_idempotent(self, session_container):
        result = await session_container.guard().authenticate(_credentials())
        guard = session_container.guard(session_id=result.session.id)

        await guard.logout()
        await guard.logout()

        assert await session_container.guard(session_id=result.session.id).user() is None

    async def test_remember_cookie_restores_login(self, session_container):
        result = await session_container.guard().authenticate(_credentials(), remember=True)
        assert result.remember_cookie.startswith(f"{result.principal.id}|")

        guard = session_container.guard(remember_cookie=result.remember_cookie)

        assert (await guard.user()).id == result.principal.id
        assert guard.session is not None
        assert guard.session.id != result.session.id

    async def test_logout_invalidates_remember_cookie(self, session_container):
        result = await session_container.guard().authenticate(_credentials(), remember=True)
        await session_container.guard(session_id=result.session.id).logout()

        guard = session_container.guard(remember_cookie=result.remember_cookie)
        assert await guard.user() is None

    async def test_forged_remember_cookie(self, session_container):
        result = await session_container.guard().authenticate(_credentials(), remember=True)
        principal_id = result.principal.id
        guard = session_container.guard(remember_cookie=f"{principal_id}|forged")
        assert await guard.user() is None

    async def test_remember_survives_two_factor(self, session_container):
        principal = session_container.credentials.retrieve_by_id("1")
        enrollment = _enable_two_factor(session_container, principal)
        challenge = await session_container.guard().authenticate(_credentials(), remember=True)
        code = session_container.two_factor.generate_code(enrollment.secret)

        result = await session_container.guard().complete_two_factor(challenge.temp_token, code)

        assert result.session is not None
        assert result.remember_cookie is not None


class TestAttemptAccounting:
    def test_parallel_attempts_at_the_limit_check_one_password(self, container, seeded):
        for _ in range(4):
            asyncio.run(container.guard().authenticate(_credentials(password="wrong")))
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            return asyncio.run(container.guard().authenticate(_credentials(password="wrong")))

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: attempt(), range(8)))

        reasons = [result.reason for result in results]
        assert reasons.count(RejectReason.INVALID_CREDENTIALS) == 1
        assert reasons.count(RejectReason.LOCKED_OUT) == 7

    async def test_blocked_attempts_reach_alert_threshold(self, container, seeded, audit):
        for _ in range(20):
            await container.guard().authenticate(_credentials(password="wrong"))

        alerts = [ctx for name, ctx in audit.events if name == "security_alert"]
        assert len(alerts) == 1
        assert alerts[0]["counter"] == "identity"
        assert alerts[0]["failures"] == 10

    async def test_inactive_account_attempts_are_counted(self, container, seeded):
        container.records.table("users").where(id=seeded.seller.id).update({"is_active": False})
        for _ in range(5):
            result = await container.guard().authenticate(_credentials(email="seller@acme.test"))
            assert result.reason is RejectReason.INACTIVE

        result = await container.guard().authenticate(_credentials(email="seller@acme.test"))

        assert result.reason is RejectReason.LOCKED_OUT

    async def test_abandoned_second_factor_keeps_counter(self, container, seeded):
        _enable_two_factor(container, seeded.admin)
        for _ in range(4):
            await container.guard().authenticate(_credentials(password="wrong"))

        challenge = await container.guard().authenticate(_credentials())
        assert isinstance(challenge, TwoFactorRequired)

        result = await container.guard().authenticate(_credentials())
        assert result.reason is RejectReason.LOCKED_OUT

    async def test_completed_second_factor_clears_counter(self, container, seeded):
        enrollment = _enable_two_factor(container, seeded.admin)
        for _ in range(4):
            await container.guard().authenticate(_credentials(password="wrong"))
        challenge = await container.guard().authenticate(_credentials())
        await container.guard().complete_two_factor(challenge.temp_token, enrollment.backup_codes[0])

        for _ in range(4):
            await container.guard().authenticate(_credentials(password="wrong"))
        assert isinstance(await container.guard().authenticate(_credentials()), TwoFactorRequired)

    async def test_member_removed_during_challenge(self, container, seeded):
        enrollment = _enable_two_factor(container, seeded.admin)
        challenge = await container.guard().authenticate(_credentials())
        container.credentials.remove_from_tenant(seeded.admin.id, 1)

        code = container.two_factor.generate_code(enrollment.secret)
        result = await container.guard().complete_two_factor(challenge.temp_token, code)

        assert result == Rejected(RejectReason.INVALID_TOKEN)


class TestLogoutVerification:
    @staticmethod
    def _forge(payload):
        def segment(data):
            raw = json.dumps(data, separators=(",", ":")).encode()
            return base64.urlsafe_b64encode(raw).decode().rstrip("=")

        return f"{segment({'alg': 'HS256', 'typ': 'JWT'})}.{segment(payload)}.not-a-signature"

    async def test_forged_bearer_revokes_nothing(self, container, seeded, clock, audit):
        forged = self._forge(
            {
                "jti": "chosen-jti",
                "exp": int(clock()) + 10**9,
                "sub": seeded.outsider.id,
                "tenant_id": "2",
                "type": "access",
                "iss": "tenantguard",
            }
        )

        await container.guard(authorization=f"Bearer {forged}").logout()

        assert not await container.tokens.is_revoked("chosen-jti")
        assert "logout" not in audit.names()

    async def test_forged_token_cannot_be_revoked_directly(self, container, clock):
        forged = self._forge({"jti": "chosen-jti", "exp": int(clock()) + 10**9})
        assert await container.tokens.revoke(forged) is False

    async def test_foreign_refresh_token_is_kept(self, container, seeded):
        mine = await container.guard().authenticate(_credentials())
        theirs = await container.guard().authenticate(_credentials(email="seller@acme.test"))
        guard = container.guard(authorization=f"Bearer {mine.tokens.access_token}")

        await guard.logout(refresh_token=theirs.tokens.refresh_token)

        assert await container.guard(
            authorization=f"Bearer {mine.tokens.access_token}"
        ).user() is None
        claims = await container.tokens.verify(
            theirs.tokens.refresh_token, expected_type=TokenType.REFRESH
        )
        assert claims.sub == seeded.seller.id

    async def test_refresh_token_alone_revokes_nothing(self, container, seeded):
        result = await container.guard().authenticate(_credentials())
        await container.guard().logout(refresh_token=result.tokens.refresh_token)
        assert await container.guard().refresh(result.tokens.refresh_token)

    async def test_revocation_ttl_is_capped(self, container, settings, clock):
        token = container.tokens.issue({"sub": "7", "tenant_id": "1"}, ttl=10**9)

        await container.tokens.revoke(token.value)

        key = REVOKED_KEY.format(jti=token.claims.jti)
        longest = max(
            settings.access_token_ttl_seconds,
            settings.refresh_token_ttl_seconds,
            settings.two_factor_token_ttl_seconds,
            settings.password_reset_ttl_seconds,
        )
        assert await container.cache.ttl(key) <= longest + settings.jwt_leeway_seconds
