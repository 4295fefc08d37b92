"""Integration tests for the authentication endpoints.

Covers login, session refresh, logout, password change and reset, the
two-factor lifecycle and the error envelope returned on failure.
"""

import pytest
from fastapi.testclient import TestClient

from authcore import app as app_module
from authcore.service.runtime import get_runtime
from authcore.service.seed import seed_catalog
from authcore.service.two_factor import generate_totp

PASSWORD = "TestPassword123!"


class CapturingEmail:
    is_configured = False

    def __init__(self):
        self.sent = []

    def send_password_reset(self, to_email, token, expires_minutes):
        self.sent.append((to_email, token))
        return True


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def runtime():
    runtime = get_runtime()
    seed_catalog(runtime.store)
    return runtime


@pytest.fixture
def alice(runtime):
    admin_role = runtime.store.get_role_by_name("Admin")
    return runtime.users.create_user("alice@example.com", "Alice", PASSWORD, [admin_role.id])


def _login(client, email="alice@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    def test_login_returns_session(self, client, alice):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["requires_two_factor"] is False
        assert data["token_type"] == "bearer"
        assert data["access_token"] and data["refresh_token"]
        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["roles"] == ["Admin"]
        assert "Blogs.Edit" in data["user"]["permissions"]
        assert "Users.View" not in data["user"]["permissions"]

    def test_bad_password_is_generic_401(self, client, alice):
        response = _login(client, password="wrong-password")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        error = response.json()["error"]
        assert error == {
            "code": "unauthorized",
            "message": "invalid email or password",
            "details": {},
        }

    def test_unknown_email_matches_bad_password(self, client, alice):
        unknown = _login(client, email="nobody@example.com")
        wrong = _login(client, password="wrong-password")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_inactive_account_rejected(self, client, runtime, alice):
        runtime.users.deactivate_user(alice.id)

        assert _login(client).status_code == 401

    def test_invalid_email_format_is_422(self, client):
        response = _login(client, email="not-an-email")

        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert all("input" not in err for err in body["error"]["details"])

    def test_request_id_echoed(self, client, alice):
        response = client.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": "wrong-password"},
            headers={"X-Request-ID": "req-123"},
        )

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"
        assert response.headers["Cache-Control"] == "no-store"


class TestMe:
    def test_requires_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_returns_current_user(self, client, alice):
        token = _login(client).json()["data"]["access_token"]

        response = client.get("/v1/auth/me", headers=_bearer(token))

        assert response.status_code == 200
        assert response.json()["data"]["id"] == alice.id

    def test_update_profile(self, client, alice):
        token = _login(client).json()["data"]["access_token"]

        response = client.put(
            "/v1/auth/me",
            json={"full_name": "Alice Liddell", "avatar_url": "https://example.com/a.png"},
            headers=_bearer(token),
        )

        assert response.status_code == 200
        assert response.json()["data"]["full_name"] == "Alice Liddell"


class TestRefreshAndLogout:
    def test_refresh_rotates_tokens(self, client, alice):
        session = _login(client).json()["data"]
        payload = {
            "access_token": session["access_token"],
            "refresh_token": session["refresh_token"],
        }

        first = client.post("/v1/auth/refresh", json=payload)
        second = client.post("/v1/auth/refresh", json=payload)

        assert first.status_code == 200
        assert first.json()["data"]["refresh_token"] != session["refresh_token"]
        assert second.status_code == 401
        assert second.json()["error"]["message"] == "invalid or expired token"

    def test_tampered_signature_is_401(self, client, alice):
        session = _login(client).json()["data"]
        header, body, _ = session["access_token"].split(".")

        response = client.post(
            "/v1/auth/refresh",
            json={
                "access_token": f"{header}.{body}.éé",
                "refresh_token": session["refresh_token"],
            },
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_missing_refresh_token_is_422(self, client, alice):
        session = _login(client).json()["data"]

        response = client.post(
            "/v1/auth/refresh", json={"access_token": session["access_token"]}
        )

        assert response.status_code == 422

    def test_logout_revokes_refresh_token(self, client, alice):
        session = _login(client).json()["data"]

        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": session["refresh_token"]},
            headers=_bearer(session["access_token"]),
        )

        assert response.json()["data"] == {"revoked": True}
        refreshed = client.post(
            "/v1/auth/refresh",
            json={
                "access_token": session["access_token"],
                "refresh_token": session["refresh_token"],
            },
        )
        assert refreshed.status_code == 401


class TestPasswords:
    def test_change_password_revokes_sessions(self, client, alice):
        session = _login(client).json()["data"]

        response = client.post(
            "/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "NewPassword456!"},
            headers=_bearer(session["access_token"]),
        )

        assert response.status_code == 200
        assert response.json()["data"]["revoked_sessions"] == 1
        refreshed = client.post(
            "/v1/auth/refresh",
            json={
                "access_token": session["access_token"],
                "refresh_token": session["refresh_token"],
            },
        )
        assert refreshed.status_code == 401
        assert client.get("/v1/auth/me", headers=_bearer(session["access_token"])).status_code == 401
        assert _login(client, password="NewPassword456!").status_code == 200

    def test_short_new_password_is_422(self, client, alice):
        token = _login(client).json()["data"]["access_token"]

        response = client.post(
            "/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "short"},
            headers=_bearer(token),
        )

        assert response.status_code == 422

    def test_forgot_password_does_not_disclose_accounts(self, client, runtime, alice):
        runtime.auth.email = CapturingEmail()

        known = client.post("/v1/auth/forgot-password", json={"email": "alice@example.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert [to for to, _ in runtime.auth.email.sent] == ["alice@example.com"]

    def test_reset_password(self, client, runtime, alice):
        runtime.auth.email = CapturingEmail()
        client.post("/v1/auth/forgot-password", json={"email": "alice@example.com"})
        token = runtime.auth.email.sent[0][1]

        response = client.post(
            "/v1/auth/reset-password", json={"token": token, "new_password": "ResetPassword789!"}
        )
        replay = client.post(
            "/v1/auth/reset-password", json={"token": token, "new_password": "Another789!!"}
        )

        assert response.status_code == 200
        assert replay.status_code == 401
        assert _login(client, password="ResetPassword789!").status_code == 200


class TestTwoFactor:
    @pytest.fixture
    def enrolled(self, client, runtime, alice, clock):
        runtime.auth.two_factor._clock = clock
        token = _login(client).json()["data"]["access_token"]
        client.post("/v1/auth/2fa/setup", headers=_bearer(token))
        secret = runtime.store.get_two_factor(alice.id).pending_secret
        response = client.post(
            "/v1/auth/2fa/enable",
            json={"code": generate_totp(secret, clock.now)},
            headers=_bearer(token),
        )
        assert response.status_code == 200
        clock.advance(30)
        return secret, response.json()["data"]["recovery_codes"], token

    def test_setup_returns_provisioning_uri(self, client, alice):
        token = _login(client).json()["data"]["access_token"]

        response = client.post("/v1/auth/2fa/setup", headers=_bearer(token))

        data = response.json()["data"]
        assert data["authenticator_uri"].startswith("otpauth://totp/")
        assert data["shared_key"]

    def test_login_requires_second_factor(self, client, enrolled, clock):
        secret, _, _ = enrolled

        login = _login(client).json()["data"]
        assert login["requires_two_factor"] is True
        assert login["access_token"] is None

        wrong = str((int(generate_totp(secret, clock.now)) + 1) % 1_000_000).zfill(6)
        rejected = client.post(
            "/v1/auth/2fa/verify",
            json={"two_factor_token": login["two_factor_token"], "code": wrong},
        )
        assert rejected.status_code == 401

        verified = client.post(
            "/v1/auth/2fa/verify",
            json={
                "two_factor_token": login["two_factor_token"],
                "code": generate_totp(secret, clock.now),
            },
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["access_token"]

    def test_recovery_code_login_once(self, client, enrolled):
        _, codes, _ = enrolled
        challenge = _login(client).json()["data"]["two_factor_token"]

        first = client.post(
            "/v1/auth/2fa/recovery",
            json={"two_factor_token": challenge, "recovery_code": codes[0]},
        )
        second = client.post(
            "/v1/auth/2fa/recovery",
            json={"two_factor_token": challenge, "recovery_code": codes[0]},
        )

        assert first.status_code == 200
        assert second.status_code == 401

    def test_access_token_cannot_verify(self, client, enrolled, clock):
        secret, _, token = enrolled

        response = client.post(
            "/v1/auth/2fa/verify",
            json={"two_factor_token": token, "code": generate_totp(secret, clock.now)},
        )

        assert response.status_code == 401

    def test_challenge_token_is_not_a_bearer(self, client, enrolled):
        challenge = _login(client).json()["data"]["two_factor_token"]

        assert client.get("/v1/auth/me", headers=_bearer(challenge)).status_code == 401

    def test_status_and_disable(self, client, enrolled):
        _, _, token = enrolled

        status = client.get("/v1/auth/2fa/status", headers=_bearer(token)).json()["data"]
        assert status["enabled"] is True and status["recovery_codes_remaining"] == 10

        bad = client.post("/v1/auth/2fa/disable", json={"password": "nope"}, headers=_bearer(token))
        assert bad.status_code == 401

        ok = client.post("/v1/auth/2fa/disable", json={"password": PASSWORD}, headers=_bearer(token))
        assert ok.json()["data"] == {"enabled": False}
        assert _login(client).json()["data"]["requires_two_factor"] is False
