"""End-to-end tests for the HTTP auth surface.

Runs the full app against the in-memory store: register, verify, login,
lockout, password reset, refresh via body and cookie, logout, role-gated
routes and production code hiding.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from siteauth import app as app_module
from siteauth.service.runtime import get_runtime, reset_runtime_for_tests
from siteauth.storage.models import Role

PASSWORD = "site-plan-2024"


@pytest.fixture
def client():
    # https so the secure refresh cookie round-trips
    return TestClient(app_module.app, base_url="https://testserver")


def _register(client, email="pm@example.com", **extra):
    payload = {
        "email": email,
        "password": PASSWORD,
        "first_name": "Pat",
        "last_name": "Mason",
        **extra,
    }
    response = client.post("/v1/auth/register", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _register_verified(client, email="pm@example.com", **extra):
    data = _register(client, email, **extra)
    response = client.post(
        "/v1/auth/verify-email",
        json={"email": email, "token": data["verification_token"], "otp": data["otp"]},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _login(client, email="pm@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegisterAndVerify:
    def test_register_returns_code_outside_production(self, client):
        data = _register(client)
        assert data["user"]["email"] == "pm@example.com"
        assert data["user"]["is_email_verified"] is False
        assert data["user"]["role"] == "project_manager"
        assert len(data["otp"]) == 6
        assert data["verification_token"]

    def test_register_validates_input(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "not-an-email", "password": "short", "first_name": "A", "last_name": "B"},
        )
        assert response.status_code == 422

    def test_admin_role_cannot_register(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "root@example.com",
                "password": PASSWORD,
                "first_name": "A",
                "last_name": "B",
                "role": "super_admin",
            },
        )
        assert response.status_code == 422

    def test_duplicate_verified_email_conflicts(self, client):
        _register_verified(client)
        response = client.post(
            "/v1/auth/register",
            json={"email": "PM@example.com", "password": PASSWORD, "first_name": "A", "last_name": "B"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_verify_returns_tokens(self, client):
        data = _register_verified(client)
        assert data["user"]["is_email_verified"] is True
        assert data["tokens"]["token_type"] == "bearer"

    def test_wrong_code_is_not_found(self, client):
        data = _register(client)
        bad = "000000" if data["otp"] != "000000" else "111111"
        response = client.post(
            "/v1/auth/verify-email",
            json={"email": "pm@example.com", "token": data["verification_token"], "otp": bad},
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_resend_otp(self, client):
        _register(client)
        response = client.post("/v1/auth/resend-otp", json={"email": "pm@example.com"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["purpose"] == "verify_email"
        assert data["otp"]

    def test_production_hides_codes(self, client, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        reset_runtime_for_tests()
        data = _register(client)
        assert data["otp"] is None
        response = client.post("/v1/auth/resend-otp", json={"email": "pm@example.com"})
        assert response.json()["data"]["otp"] is None


class TestLogin:
    def test_login_sets_refresh_cookie(self, client):
        _register_verified(client)
        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["is_setup_complete"] is False
        assert data["tokens"]["access_token"]
        cookie = response.headers["set-cookie"]
        assert "refresh_token=" in cookie
        assert "HttpOnly" in cookie
        assert "Secure" in cookie

    def test_invalid_credentials_are_generic(self, client):
        _register_verified(client)
        unknown = _login(client, email="ghost@example.com")
        wrong = _login(client, password="wrong-password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]

    def test_unverified_login_is_rejected(self, client):
        _register(client)
        response = _login(client)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_lockout_after_repeated_failures(self, client):
        _register_verified(client)
        for _ in range(4):
            assert _login(client, password="wrong-password").status_code == 401
        locked = _login(client, password="wrong-password")
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "locked"
        assert int(locked.headers["Retry-After"]) > 0
        assert _login(client).status_code == 423

    def test_login_rate_limit(self, client, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "2")
        reset_runtime_for_tests()
        for _ in range(2):
            assert _login(client, email="ghost@example.com").status_code == 401
        response = _login(client, email="ghost@example.com")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"


class TestPasswordFlows:
    def test_forgot_and_reset_password(self, client):
        _register_verified(client)
        response = client.post("/v1/auth/forgot-password", json={"email": "pm@example.com"})
        assert response.status_code == 200
        dispatch = response.json()["data"]
        assert dispatch["purpose"] == "reset_password"

        confirm = client.post(
            "/v1/auth/verify-email",
            json={"email": "pm@example.com", "token": dispatch["token"], "otp": dispatch["otp"]},
        )
        assert confirm.status_code == 200
        assert confirm.json()["data"]["user"]["is_reset_password"] is True

        reset = client.post(
            "/v1/auth/reset-password",
            json={"email": "pm@example.com", "password": "brand-new-pass", "otp": dispatch["otp"]},
        )
        assert reset.status_code == 200
        assert reset.json()["data"]["user"]["is_reset_password"] is False
        assert _login(client).status_code == 401
        assert _login(client, password="brand-new-pass").status_code == 200

    def test_change_password(self, client):
        tokens = _register_verified(client)["tokens"]
        response = client.post(
            "/v1/auth/change-password",
            json={"old_password": PASSWORD, "new_password": "next-password-1"},
            headers=_auth(tokens["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"status": "changed"}
        assert _login(client).status_code == 401
        assert _login(client, password="next-password-1").status_code == 200

    def test_change_password_wrong_current(self, client):
        tokens = _register_verified(client)["tokens"]
        response = client.post(
            "/v1/auth/change-password",
            json={"old_password": "not-the-password", "new_password": "next-password-1"},
            headers=_auth(tokens["access_token"]),
        )
        assert response.status_code == 401

    def test_change_password_requires_token(self, client):
        response = client.post(
            "/v1/auth/change-password",
            json={"old_password": PASSWORD, "new_password": "next-password-1"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestSessions:
    def test_refresh_with_body_rotates(self, client):
        tokens = _register_verified(client)["tokens"]
        first = client.post("/v1/auth/refresh-auth", json={"refresh_token": tokens["refresh_token"]})
        assert first.status_code == 200
        assert first.json()["data"]["tokens"]["refresh_token"] != tokens["refresh_token"]
        again = client.post("/v1/auth/refresh-auth", json={"refresh_token": tokens["refresh_token"]})
        assert again.status_code == 401

    def test_refresh_with_cookie(self, client):
        _register_verified(client)
        assert _login(client).status_code == 200
        response = client.post("/v1/auth/refresh-auth")
        assert response.status_code == 200
        assert response.json()["data"]["tokens"]["access_token"]

    def test_refresh_without_token(self, client):
        response = client.post("/v1/auth/refresh-auth")
        assert response.status_code == 401

    def test_refresh_with_non_ascii_signature(self, client):
        tokens = _register_verified(client)["tokens"]
        header, payload, _ = tokens["refresh_token"].split(".")
        response = client.post(
            "/v1/auth/refresh-auth", json={"refresh_token": f"{header}.{payload}.\u00e9\u00e9"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_logout_revokes_access_token(self, client):
        _register_verified(client)
        tokens = _login(client).json()["data"]["tokens"]
        assert client.get("/v1/me", headers=_auth(tokens["access_token"])).status_code == 200

        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": tokens["refresh_token"]},
            headers=_auth(tokens["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"status": "logged_out"}
        assert client.get("/v1/me", headers=_auth(tokens["access_token"])).status_code == 401
        refresh = client.post("/v1/auth/refresh-auth", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_without_tokens_is_ok(self, client):
        response = client.post("/v1/auth/logout")
        assert response.status_code == 200


class TestRoleGatedRoutes:
    def test_me(self, client):
        tokens = _register_verified(client)["tokens"]
        response = client.get("/v1/me", headers=_auth(tokens["access_token"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["role"] == "project_manager"
        assert data["user"]["email"] == "pm@example.com"

    def test_invite_supervisor_and_set_initial_password(self, client):
        verified = _register_verified(client)
        runtime = get_runtime()
        company = runtime.tenancy.create_company("Mason Builders")
        runtime.tenancy.link_account(verified["user"]["id"], company.id, Role.PROJECT_MANAGER)

        response = client.post(
            "/v1/supervisors/invite",
            json={"email": "sup@example.com", "first_name": "Sam", "last_name": "Pike"},
            headers=_auth(verified["tokens"]["access_token"]),
        )
        assert response.status_code == 201, response.text
        invited = response.json()["data"]
        assert invited["user"]["role"] == "project_supervisor"
        assert invited["user"]["company_id"] == company.id

        login = _login(client, email="sup@example.com", password=invited["temporary_password"])
        assert login.status_code == 200
        assert login.json()["data"]["is_setup_complete"] is True
        sup_token = login.json()["data"]["tokens"]["access_token"]

        forbidden = client.post(
            "/v1/supervisors/invite",
            json={"email": "other@example.com", "first_name": "O", "last_name": "P"},
            headers=_auth(sup_token),
        )
        assert forbidden.status_code == 403

        initial = client.post(
            "/v1/auth/set-initial-password",
            json={"password": "my-own-password"},
            headers=_auth(sup_token),
        )
        assert initial.status_code == 200
        assert initial.json()["data"]["user"]["is_password_temporary"] is False
        old = _login(client, email="sup@example.com", password=invited["temporary_password"])
        assert old.status_code == 401
        assert _login(client, email="sup@example.com", password="my-own-password").status_code == 200

    def test_admin_provisioning_requires_super_admin(self, client):
        tokens = _register_verified(client)["tokens"]
        response = client.post(
            "/v1/admin/accounts",
            json={"email": "ops@example.com", "first_name": "Ops", "last_name": "Lead"},
            headers=_auth(tokens["access_token"]),
        )
        assert response.status_code == 403

    def test_super_admin_provisions_admin(self, client):
        asyncio.run(get_runtime().auth.bootstrap_super_admin("root@example.com", "root-password-1"))
        token = _login(client, email="root@example.com", password="root-password-1").json()[
            "data"
        ]["tokens"]["access_token"]
        response = client.post(
            "/v1/admin/accounts",
            json={"email": "ops@example.com", "first_name": "Ops", "last_name": "Lead"},
            headers=_auth(token),
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["role"] == "admin"
        assert data["temporary_password"]


def test_healthz_and_headers(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["API-Version"] == app_module.__version__
