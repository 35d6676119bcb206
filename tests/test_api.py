"""HTTP-level tests for the auth routes, error envelope and tenant-scoped routes."""

import pytest
from fastapi import APIRouter, Body, Depends, Response
from fastapi.responses import PlainTextResponse, StreamingResponse
from fastapi.testclient import TestClient

from conftest import PASSWORD, RecordingAudit, make_settings, seed
from tenantguard.api.routes import TenantScopedRoute, get_request_context, require_permission
from tenantguard.api.schemas import Envelope
from tenantguard.app import create_app
from tenantguard.service.context import RequestContext, build_container
from tenantguard.storage.memory import MemoryCache, MemoryRecordStore


def _with_report_routes(app):
    """Mount business-style routes that sit behind the same dependencies."""
    reports = APIRouter(route_class=TenantScopedRoute)
    calls = []

    @reports.get("/reports/finance")
    async def finance_report(
        ctx: RequestContext = Depends(require_permission("financeiro.export")),
    ):
        calls.append(ctx.tenant_id)
        return Envelope(status="ok", data={"tenant_id": ctx.tenant_id, "total": 10})

    @reports.post("/reports/finance")
    async def schedule_finance_report(
        payload: dict = Body(...),
        ctx: RequestContext = Depends(get_request_context),
    ):
        calls.append(payload)
        return Envelope(status="ok", data={"tenant_id": ctx.tenant_id, "scheduled": True})

    @reports.get("/reports/leaky")
    async def leaky_report(ctx: RequestContext = Depends(get_request_context)):
        return {"data": [{"id": 1, "tenant_id": ctx.tenant_id}, {"id": 2, "tenant_id": "2"}]}

    @reports.get("/reports/plain")
    async def plain_report(ctx: RequestContext = Depends(get_request_context)):
        return PlainTextResponse('{"rows": [{"tenant_id": "2"}]}')

    @reports.get("/reports/stream")
    async def streamed_report(ctx: RequestContext = Depends(get_request_context)):
        async def rows():
            yield b'{"tenant_id": "2"}'

        return StreamingResponse(rows(), media_type="application/json")

    @reports.get("/reports/empty")
    async def empty_report(ctx: RequestContext = Depends(get_request_context)):
        return Response(status_code=204)

    app.include_router(reports, prefix="/v1")
    app.state.calls = calls
    return app


@pytest.fixture
def app(container, seeded):
    return _with_report_routes(create_app(container))


@pytest.fixture
def client(app):
    return TestClient(app)


def _login(client, email="admin@acme.test", password=PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


def _tokens(client, email="admin@acme.test"):
    response = _login(client, email)
    assert response.status_code == 200, response.text
    return response.json()["data"]["tokens"]


def _auth(tokens, **headers):
    return {"Authorization": f"Bearer {tokens['access_token']}", **headers}


class TestLoginEndpoint:
    def test_login_returns_token_pair(self, client):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["status"] == "authenticated"
        assert body["data"]["tenant_id"] == "1"
        assert body["data"]["tokens"]["token_type"] == "Bearer"
        assert body["data"]["tokens"]["expires_in"] == 3600

    def test_correlation_id_echoed(self, client):
        response = _login(client, password="wrong")
        assert response.headers["X-Request-ID"]
        response = client.get("/healthz", headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"

    def test_security_headers(self, client):
        response = _login(client)
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_wrong_password_is_generic_401(self, client):
        response = _login(client, password="wrong")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "authentication required"
        assert body["error"]["details"] is None

    def test_unknown_account_is_indistinguishable(self, client):
        unknown = _login(client, email="ghost@acme.test").json()["error"]
        wrong = _login(client, password="wrong").json()["error"]
        assert unknown == wrong

    def test_lockout_returns_429_with_retry_after(self, client):
        for _ in range(5):
            assert _login(client, password="wrong").status_code == 401

        response = _login(client)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "900"
        assert response.json()["error"]["code"] == "rate_limited"

    def test_invalid_email_is_validation_error(self, client):
        response = _login(client, email="not-an-email")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestAuthenticatedEndpoints:
    def test_me(self, client):
        tokens = _tokens(client)

        response = client.get("/v1/auth/me", headers=_auth(tokens))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == "admin@acme.test"
        assert data["tenant_id"] == "1"
        assert data["roles"] == ["admin"]
        assert "financeiro.export" in data["permissions"]
        assert data["two_factor_enabled"] is False

    def test_me_requires_authentication(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_garbage_bearer_rejected(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_permissions(self, client):
        tokens = _tokens(client, "seller@acme.test")
        response = client.get("/v1/auth/permissions", headers=_auth(tokens))
        assert response.json()["data"] == {
            "tenant_id": "1",
            "roles": ["sales_rep"],
            "permissions": ["sales.create", "sales.view"],
        }

    def test_matching_tenant_header_accepted(self, client):
        tokens = _tokens(client)
        response = client.get("/v1/auth/me", headers=_auth(tokens, **{"X-Tenant-ID": "1"}))
        assert response.status_code == 200


class TestTenantIsolation:
    def test_header_mismatch_rejected_before_handler(self, client, app):
        tokens = _tokens(client)

        response = client.get(
            "/v1/reports/finance", headers=_auth(tokens, **{"X-Tenant-ID": "2"})
        )

        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "access denied",
            "details": None,
        }
        assert app.state.calls == []

    def test_query_parameter_mismatch_rejected(self, client):
        tokens = _tokens(client)
        response = client.get("/v1/auth/me?tenant_id=2", headers=_auth(tokens))
        assert response.status_code == 403

    def test_repeated_query_parameter_checks_every_value(self, client):
        tokens = _tokens(client)
        response = client.get(
            "/v1/auth/me?tenant_id=2&tenant_id=1", headers=_auth(tokens)
        )
        assert response.status_code == 403

    def test_own_tenant_in_body_accepted(self, client, app):
        tokens = _tokens(client)
        response = client.post(
            "/v1/reports/finance", json={"tenant_id": "1", "month": 5}, headers=_auth(tokens)
        )
        assert response.status_code == 200
        assert app.state.calls == [{"tenant_id": "1", "month": 5}]

    def test_foreign_tenant_in_body_rejected_before_handler(self, client, app, audit):
        tokens = _tokens(client)

        response = client.post(
            "/v1/reports/finance",
            json={"filters": [{"company_id": 2}], "month": 5},
            headers=_auth(tokens),
        )

        assert response.status_code == 403
        assert app.state.calls == []
        assert audit.events[-1][1]["source"] == "body"

    def test_leaking_response_is_dropped(self, client, audit):
        tokens = _tokens(client)

        response = client.get("/v1/reports/leaky", headers=_auth(tokens))

        assert response.status_code == 403
        assert "data" not in response.json() or response.json()["data"] is None
        assert "tenant_data_leak" in audit.names()

    def test_non_json_media_type_still_scanned(self, client):
        tokens = _tokens(client)
        response = client.get("/v1/reports/plain", headers=_auth(tokens))
        assert response.status_code == 403
        assert "rows" not in response.text

    def test_streamed_response_refused(self, client, audit):
        tokens = _tokens(client)
        response = client.get("/v1/reports/stream", headers=_auth(tokens))
        assert response.status_code == 403
        assert audit.events[-1][1]["reason"] == "streamed_body"

    def test_empty_response_passes(self, client):
        tokens = _tokens(client)
        response = client.get("/v1/reports/empty", headers=_auth(tokens))
        assert response.status_code == 204


class TestPermissionDependency:
    def test_permission_granted(self, client, app):
        tokens = _tokens(client)
        response = client.get("/v1/reports/finance", headers=_auth(tokens))
        assert response.status_code == 200
        assert response.json()["data"] == {"tenant_id": "1", "total": 10}
        assert app.state.calls == ["1"]

    def test_permission_denied(self, client, app):
        tokens = _tokens(client, "seller@acme.test")
        response = client.get("/v1/reports/finance", headers=_auth(tokens))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert app.state.calls == []


class TestTokenRotationEndpoints:
    def test_refresh_works_once(self, client):
        tokens = _tokens(client)

        first = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        second = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert first.status_code == 200
        assert first.json()["data"]["refresh_token"] != tokens["refresh_token"]
        assert second.status_code == 401

    def test_logout_twice(self, client):
        tokens = _tokens(client)
        body = {"refresh_token": tokens["refresh_token"]}

        assert client.post("/v1/auth/logout", json=body, headers=_auth(tokens)).status_code == 200
        assert client.post("/v1/auth/logout", json=body, headers=_auth(tokens)).status_code == 200
        assert client.get("/v1/auth/me", headers=_auth(tokens)).status_code == 401
        refresh = client.post("/v1/auth/refresh", json=body)
        assert refresh.status_code == 401

    def test_logout_without_body(self, client):
        assert client.post("/v1/auth/logout").status_code == 200


class TestTwoFactorEndpoints:
    def _enroll(self, client, container, tokens):
        enabled = client.post("/v1/auth/2fa/enable", headers=_auth(tokens))
        assert enabled.status_code == 200
        enrollment = enabled.json()["data"]
        code = container.two_factor.generate_code(enrollment["secret"])
        confirmed = client.post(
            "/v1/auth/2fa/confirm", json={"code": code}, headers=_auth(tokens)
        )
        assert confirmed.json()["data"] == {"state": "active", "backup_codes_remaining": 8}
        return enrollment

    def test_full_two_factor_login(self, client, container):
        enrollment = self._enroll(client, container, _tokens(client))

        challenge = _login(client).json()["data"]
        assert challenge["status"] == "two_factor_required"
        assert challenge["tokens"] is None

        response = client.post(
            "/v1/auth/2fa/verify",
            json={"temp_token": challenge["temp_token"], "code": enrollment["backup_codes"][0]},
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "authenticated"

        replay = client.post(
            "/v1/auth/2fa/verify",
            json={"temp_token": challenge["temp_token"], "code": enrollment["backup_codes"][1]},
        )
        assert replay.status_code == 401

    def test_enable_twice_conflicts(self, client, container):
        tokens = _tokens(client)
        self._enroll(client, container, tokens)
        response = client.post("/v1/auth/2fa/enable", headers=_auth(tokens))
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_confirm_with_wrong_code(self, client):
        tokens = _tokens(client)
        client.post("/v1/auth/2fa/enable", headers=_auth(tokens))
        response = client.post("/v1/auth/2fa/confirm", json={"code": "ZZZZZZ"}, headers=_auth(tokens))
        assert response.status_code == 400

    def test_disable_requires_code(self, client, container):
        tokens = _tokens(client)
        enrollment = self._enroll(client, container, tokens)

        denied = client.post("/v1/auth/2fa/disable", json={"code": "ZZZZZZ"}, headers=_auth(tokens))
        assert denied.status_code == 400

        code = container.two_factor.generate_code(enrollment["secret"])
        response = client.post("/v1/auth/2fa/disable", json={"code": code}, headers=_auth(tokens))
        assert response.json()["data"]["state"] == "unset"
        status = client.get("/v1/auth/2fa", headers=_auth(tokens)).json()["data"]
        assert status == {"state": "unset", "backup_codes_remaining": 0}


class TestPasswordResetEndpoints:
    def test_forgot_and_reset(self, client, container):
        outbox = []
        container.password_reset.notifier = lambda principal, token: outbox.append(token)

        known = client.post("/v1/auth/password/forgot", json={"email": "seller@acme.test"})
        unknown = client.post("/v1/auth/password/forgot", json={"email": "ghost@acme.test"})
        assert known.json()["data"] == unknown.json()["data"] == {"status": "sent"}
        assert len(outbox) == 1

        reset = client.post(
            "/v1/auth/password/reset", json={"token": outbox[0], "password": "Fresh-Start-2024"}
        )
        assert reset.status_code == 200
        assert _login(client, "seller@acme.test", "Fresh-Start-2024").status_code == 200

        again = client.post(
            "/v1/auth/password/reset", json={"token": outbox[0], "password": "Other-Pass-2024"}
        )
        assert again.status_code == 401

    def test_forgot_is_rate_limited(self, client):
        for _ in range(5):
            client.post("/v1/auth/password/forgot", json={"email": "seller@acme.test"})
        response = client.post("/v1/auth/password/forgot", json={"email": "seller@acme.test"})
        assert response.status_code == 429


class TestSessionGuardApi:
    @pytest.fixture
    def client(self, clock, hasher):
        container = build_container(
            make_settings(auth_guard="session"),
            records=MemoryRecordStore(),
            cache=MemoryCache(clock=clock),
            audit=RecordingAudit(),
            hasher=hasher,
            clock=clock,
        )
        seed(container)
        return TestClient(create_app(container))

    def test_session_login_flow(self, client):
        response = _login(client)
        data = response.json()["data"]
        assert data["tokens"] is None
        assert data["session_id"]
        assert "session_id=" in response.headers["set-cookie"]

        headers = {"session_id": data["session_id"]}
        assert client.get("/v1/auth/me", headers=headers).json()["data"]["tenant_id"] == "1"

        assert client.post("/v1/auth/logout", headers=headers).status_code == 200
        assert client.post("/v1/auth/logout", headers=headers).status_code == 200
        assert client.get("/v1/auth/me", headers=headers).status_code == 401

    def test_refresh_not_available(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "x.y.z"})
        assert response.status_code == 400
