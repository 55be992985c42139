"""Integration tests for the HTTP surface.

Tests for:
- register -> activate -> login, with both session cookies
- Brute-force throttling visible as 401 x5 then 429 with Retry-After
- HTTP Basic login, refresh, check-session and logout
- Password reset and change over HTTP
- Google sign-in and SSO-to-local conversion
- One-time codes
- The inter-service token verification endpoint
"""

import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from applicant_auth.app import app
from applicant_auth.service.runtime import get_runtime
from applicant_auth.service.sso import GoogleIdentityVerifier

PASSWORD = "P@ssw0rd"
NEW_PASSWORD = "N3w-P@ssword"
GOOGLE_CLIENT_ID = "client-123.apps.googleusercontent.com"


@pytest.fixture
def runtime(mailer):
    runtime = get_runtime()
    runtime.auth.mailer = mailer
    runtime.otp.mailer = mailer
    return runtime


@pytest.fixture
def client(runtime):
    return TestClient(app)


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _forged_bearer():
    """Well-formed HS256 header and payload with a latin-1 signature segment."""

    def segment(data):
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    token = ".".join(
        [segment({"alg": "HS256", "typ": "JWT"}), segment({"sub": "acct-1"}), "éé"]
    )
    return {"Authorization": f"Bearer {token}".encode("latin-1")}


def _register_and_activate(client, mailer, email="a@x.com"):
    response = client.post("/api/auth/register", json={"email": email, "password": PASSWORD})
    assert response.status_code == 201
    token = mailer.activations[-1][1]
    response = client.get("/api/auth/activate", params={"token": token})
    assert response.status_code == 200


def _login(client, email="a@x.com", password=PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def _set_cookie_headers(response):
    return {
        header.split("=", 1)[0]: header for header in response.headers.get_list("set-cookie")
    }


class TestRegistrationScenario:
    """Tests for the register, activate and login happy path."""

    def test_register_activate_login(self, client, mailer):
        response = client.post(
            "/api/auth/register",
            json={"email": "A@x.com", "password": PASSWORD, "first_name": "Ada"},
        )
        assert response.status_code == 201
        account = response.json()["data"]["account"]
        assert account["email"] == "a@x.com"
        assert account["activated"] is False
        assert account["enabled"] is False
        assert account["profile"] == {"first_name": "Ada"}

        token = mailer.activations[-1][1]
        response = client.get("/api/auth/activate", params={"token": token})
        assert response.status_code == 200
        assert response.json()["data"]["activated"] is True

        response = _login(client)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["account"]["activated"] is True
        assert body["data"]["access_token"]

        cookies = _set_cookie_headers(response)
        assert set(cookies) == {"access_token", "refresh_token"}
        assert "Max-Age=18000" in cookies["access_token"]
        assert "Max-Age=604800" in cookies["refresh_token"]
        for header in cookies.values():
            assert "HttpOnly" in header

    def test_activation_link_reuse_is_success(self, client, mailer):
        client.post("/api/auth/register", json={"email": "a@x.com", "password": PASSWORD})
        token = mailer.activations[-1][1]
        client.get("/api/auth/activate", params={"token": token})

        response = client.get("/api/auth/activate", params={"token": token})
        assert response.status_code == 200
        assert response.json()["data"]["already_activated"] is True

    def test_duplicate_registration(self, client, mailer):
        _register_and_activate(client, mailer)
        response = client.post(
            "/api/auth/register", json={"email": "a@x.com", "password": PASSWORD}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_registration_rolled_back_when_mail_fails(self, client, mailer, runtime):
        mailer.fail = True
        response = client.post(
            "/api/auth/register", json={"email": "a@x.com", "password": PASSWORD}
        )
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert runtime.store.get_account_by_email("a@x.com") is None

    def test_invalid_body_is_validation_error(self, client):
        response = client.post(
            "/api/auth/register", json={"email": "not-an-email", "password": PASSWORD}
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["errors"][0]["loc"][-1] == "email"

    def test_unactivated_login_forbidden(self, client):
        client.post("/api/auth/register", json={"email": "a@x.com", "password": PASSWORD})
        response = _login(client)
        assert response.status_code == 403
        assert response.json()["error"]["details"]["reason"] == "account_not_activated"

    def test_resend_activation_cooldown(self, client, mailer):
        client.post("/api/auth/register", json={"email": "a@x.com", "password": PASSWORD})
        first = client.post("/api/auth/resend-activation", json={"email": "a@x.com"})
        assert first.status_code == 200
        assert first.json()["data"]["status"] == "sent"

        second = client.post("/api/auth/resend-activation", json={"email": "a@x.com"})
        assert second.status_code == 429
        assert int(second.headers["Retry-After"]) > 0


class TestLoginThrottling:
    """Tests for brute-force protection over HTTP."""

    def test_six_failed_logins(self, client, mailer):
        _register_and_activate(client, mailer)
        statuses = [_login(client, password="Wr0ng-pass").status_code for _ in range(6)]
        assert statuses == [401, 401, 401, 401, 401, 429]

    def test_rate_limited_envelope(self, client, mailer):
        _register_and_activate(client, mailer)
        for _ in range(5):
            _login(client, password="Wr0ng-pass")

        response = _login(client)
        assert response.status_code == 429
        retry_after = int(response.headers["Retry-After"])
        assert 0 < retry_after <= 60
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["retry_after"] == retry_after

    def test_unknown_email_is_unauthorized(self, client):
        response = _login(client, email="ghost@x.com")
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "invalid_credentials"


class TestSessions:
    """Tests for Basic login, refresh, check-session and logout."""

    def test_basic_auth_login(self, client, mailer):
        _register_and_activate(client, mailer)
        credentials = base64.b64encode(f"a@x.com:{PASSWORD}".encode()).decode()

        response = client.post(
            "/api/auth/login", headers={"Authorization": f"Basic {credentials}"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["account"]["email"] == "a@x.com"

    def test_login_without_credentials(self, client):
        response = client.post("/api/auth/login")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_refresh_keeps_refresh_token(self, client, mailer):
        _register_and_activate(client, mailer)
        login = _login(client)
        refresh_token = login.cookies.get("refresh_token")

        response = client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
        assert response.status_code == 200
        assert response.json()["data"]["access_token"]
        assert response.cookies.get("refresh_token") == refresh_token

    def test_refresh_cookie_follows_token_lifetime(self, client, mailer, runtime, monkeypatch):
        """The re-set refresh cookie expires with the token, not a full week later."""
        _register_and_activate(client, mailer)
        refresh_token = _login(client).cookies.get("refresh_token")
        issued_clock = runtime.tokens._clock
        monkeypatch.setattr(runtime.tokens, "_clock", lambda: issued_clock() + 3600)

        response = client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
        assert response.status_code == 200
        cookie = _set_cookie_headers(response)["refresh_token"]
        max_age = int(cookie.split("Max-Age=", 1)[1].split(";", 1)[0])
        assert 604800 - 3600 - 5 <= max_age <= 604800 - 3600

    def test_logout_with_forged_token_succeeds(self, client):
        response = client.post("/api/auth/logout", headers=_forged_bearer())
        assert response.status_code == 200
        cleared = _set_cookie_headers(response)
        assert "Max-Age=0" in cleared["access_token"]
        assert "Max-Age=0" in cleared["refresh_token"]

    def test_refresh_without_token(self, client):
        response = client.post("/api/auth/refresh", json={})
        assert response.status_code == 401

    def test_check_session(self, client, mailer):
        _register_and_activate(client, mailer)
        access = _login(client).json()["data"]["access_token"]

        response = client.get("/api/auth/check-session", headers=_bearer(access))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["valid"] is True
        assert data["account"]["email"] == "a@x.com"

    def test_logout_revokes_tokens(self, client, mailer):
        _register_and_activate(client, mailer)
        login = _login(client)
        access = login.json()["data"]["access_token"]
        refresh_token = login.cookies.get("refresh_token")

        response = client.post(
            "/api/auth/logout", headers=_bearer(access), json={"refresh_token": refresh_token}
        )
        assert response.status_code == 200

        response = client.get("/api/auth/check-session", headers=_bearer(access))
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "token_revoked"

        response = client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
        assert response.status_code == 401

    def test_logout_without_session_succeeds(self, client):
        response = client.post("/api/auth/logout")
        assert response.status_code == 200


class TestPasswordEndpoints:
    """Tests for forgot, reset and change password."""

    def test_forgot_password_does_not_reveal_accounts(self, client, mailer):
        _register_and_activate(client, mailer)
        known = client.post("/api/auth/forgot-password", json={"email": "a@x.com"})
        unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@x.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(mailer.resets) == 1

    def test_reset_password(self, client, mailer):
        _register_and_activate(client, mailer)
        client.post("/api/auth/forgot-password", json={"email": "a@x.com"})
        token = mailer.resets[-1][1]

        response = client.post(
            "/api/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD}
        )
        assert response.status_code == 200
        assert _login(client, password=NEW_PASSWORD).status_code == 200

        reused = client.post(
            "/api/auth/reset-password", json={"token": token, "new_password": "An0ther-P@ss"}
        )
        assert reused.status_code == 401

    def test_change_password(self, client, mailer):
        _register_and_activate(client, mailer)
        access = _login(client).json()["data"]["access_token"]

        response = client.post(
            "/api/auth/change-password",
            headers=_bearer(access),
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
        )
        assert response.status_code == 200
        new_access = response.json()["data"]["access_token"]

        assert client.get("/api/auth/check-session", headers=_bearer(access)).status_code == 401
        assert (
            client.get("/api/auth/check-session", headers=_bearer(new_access)).status_code == 200
        )

    def test_change_password_requires_auth(self, client):
        client.cookies.clear()
        response = client.post(
            "/api/auth/change-password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
        )
        assert response.status_code == 401

    def test_change_email(self, client, mailer):
        _register_and_activate(client, mailer)
        access = _login(client).json()["data"]["access_token"]

        response = client.post(
            "/api/auth/change-email",
            headers=_bearer(access),
            json={"current_password": PASSWORD, "new_email": "b@x.com"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["account"]["email"] == "b@x.com"
        assert _login(client, email="b@x.com").status_code == 200


class TestGoogleSignIn:
    """Tests for Google sign-in endpoints."""

    @pytest.fixture
    def google(self, runtime):
        identities = {
            "tok-g": {"sub": "1", "email": "g@x.com"},
            "tok-g2": {"sub": "1", "email": "g2@x.com"},
        }

        def handler(request):
            info = identities.get(request.url.params.get("id_token"))
            if info is None:
                return httpx.Response(400, json={"error": "invalid_token"})
            return httpx.Response(
                200, json={**info, "aud": GOOGLE_CLIENT_ID, "email_verified": "true"}
            )

        runtime.sso.verifier = GoogleIdentityVerifier(
            GOOGLE_CLIENT_ID,
            tokeninfo_url="https://tokeninfo.test/tokeninfo",
            transport=httpx.MockTransport(handler),
        )
        return runtime

    def test_google_login_sets_cookies(self, client, google):
        response = client.post("/api/auth/oauth2/login", json={"id_token": "tok-g"})
        assert response.status_code == 200
        assert response.json()["data"]["account"]["auth_provider"] == "google"
        assert set(_set_cookie_headers(response)) == {"access_token", "refresh_token"}

    def test_invalid_google_token(self, client, google):
        response = client.post("/api/auth/oauth2/login", json={"id_token": "forged"})
        assert response.status_code == 401

    def test_google_login_on_local_account_conflicts(self, client, mailer, google):
        _register_and_activate(client, mailer, email="g@x.com")
        response = client.post("/api/auth/oauth2/login", json={"id_token": "tok-g"})
        assert response.status_code == 409
        assert response.json()["error"]["details"]["reason"] == "local_account_exists"

    def test_set_password_converts_account(self, client, google):
        access = client.post("/api/auth/oauth2/login", json={"id_token": "tok-g"}).json()[
            "data"
        ]["access_token"]

        response = _login(client, email="g@x.com")
        assert response.status_code == 403
        assert response.json()["error"]["details"]["reason"] == "sso_account"

        response = client.post(
            "/api/auth/set-password",
            headers=_bearer(access),
            json={"new_password": PASSWORD, "confirm_password": PASSWORD},
        )
        assert response.status_code == 200
        assert response.json()["data"]["account"]["auth_provider"] == "local"
        assert _login(client, email="g@x.com").status_code == 200

        again = client.post(
            "/api/auth/set-password",
            headers=_bearer(access),
            json={"new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
        )
        assert again.status_code == 403
        assert again.json()["error"]["details"]["reason"] == "not_sso_account"

    def test_sso_email_change(self, client, google):
        access = client.post("/api/auth/oauth2/login", json={"id_token": "tok-g"}).json()[
            "data"
        ]["access_token"]
        headers = _bearer(access)

        old = client.post(
            "/api/auth/verify-sso-ownership", headers=headers, json={"id_token": "tok-g"}
        )
        assert old.status_code == 200
        assert old.json()["data"]["expires_in"] == 600
        new = client.post(
            "/api/auth/verify-new-email-ownership",
            headers=headers,
            json={"id_token": "tok-g2", "new_email": "g2@x.com"},
        )
        assert new.status_code == 200

        response = client.post(
            "/api/auth/change-email-sso",
            headers=headers,
            json={
                "old_email_proof": old.json()["data"]["proof"],
                "new_email_proof": new.json()["data"]["proof"],
            },
        )
        assert response.status_code == 200
        assert response.json()["data"]["account"]["email"] == "g2@x.com"

    def test_password_change_forbidden_for_sso(self, client, google):
        access = client.post("/api/auth/oauth2/login", json={"id_token": "tok-g"}).json()[
            "data"
        ]["access_token"]
        response = client.post(
            "/api/auth/change-password",
            headers=_bearer(access),
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
        )
        assert response.status_code == 403


class TestOtpEndpoints:
    """Tests for send-otp and verify-otp."""

    def test_send_and_verify(self, client, mailer):
        response = client.post("/api/auth/send-otp", json={"email": "u@x.com"})
        assert response.status_code == 200
        code = mailer.otps[-1][1]

        response = client.post("/api/auth/verify-otp", json={"email": "u@x.com", "code": code})
        assert response.status_code == 200
        assert response.json()["data"]["verified"] is True

    def test_wrong_code(self, client, mailer):
        client.post("/api/auth/send-otp", json={"email": "u@x.com"})
        code = mailer.otps[-1][1]
        wrong = "000000" if code != "000000" else "111111"

        response = client.post("/api/auth/verify-otp", json={"email": "u@x.com", "code": wrong})
        assert response.status_code == 401

    def test_malformed_code(self, client):
        response = client.post("/api/auth/verify-otp", json={"email": "u@x.com", "code": "12ab56"})
        assert response.status_code == 400

    def test_non_ascii_digits_rejected(self, client):
        client.post("/api/auth/send-otp", json={"email": "u@x.com"})
        response = client.post(
            "/api/auth/verify-otp", json={"email": "u@x.com", "code": "١٢٣٤٥٦"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_repeated_guesses_are_throttled(self, client, mailer):
        client.post("/api/auth/send-otp", json={"email": "u@x.com"})
        code = mailer.otps[-1][1]
        wrong = "000000" if code != "000000" else "111111"

        statuses = [
            client.post(
                "/api/auth/verify-otp", json={"email": "u@x.com", "code": wrong}
            ).status_code
            for _ in range(6)
        ]
        assert statuses == [401, 401, 401, 401, 429, 429]

        response = client.post("/api/auth/verify-otp", json={"email": "u@x.com", "code": code})
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0


class TestSystemTokenVerification:
    """Tests for GET /api/system/verify-token."""

    def test_missing_header(self, client):
        response = client.get("/api/system/verify-token")
        assert response.status_code == 400
        assert response.json()["valid"] is False

    def test_non_bearer_header(self, client):
        response = client.get(
            "/api/system/verify-token", headers={"Authorization": "Basic abc"}
        )
        assert response.status_code == 400

    def test_valid_token(self, client, mailer, runtime):
        _register_and_activate(client, mailer)
        access = _login(client).json()["data"]["access_token"]

        response = client.get("/api/system/verify-token", headers=_bearer(access))
        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is True
        assert body["system_id"] == "JOB_APPLICANT_SYSTEM"
        assert body["subject"] == runtime.store.get_account_by_email("a@x.com").id
        assert body["username"] == "a@x.com"
        assert "status" not in body

    def test_invalid_token(self, client):
        response = client.get("/api/system/verify-token", headers=_bearer("garbage"))
        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is False
        assert body["subject"] is None

    def test_non_ascii_signature_is_invalid(self, client):
        response = client.get("/api/system/verify-token", headers=_forged_bearer())
        assert response.status_code == 200
        assert response.json()["valid"] is False

    def test_revoked_token_still_valid_for_systems(self, client, mailer):
        _register_and_activate(client, mailer)
        access = _login(client).json()["data"]["access_token"]
        client.post("/api/auth/logout", headers=_bearer(access))

        response = client.get("/api/system/verify-token", headers=_bearer(access))
        assert response.json()["valid"] is True


class TestHealth:
    """Tests for /healthz and response headers."""

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["cache"]["type"] == "MemoryCache"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["Cache-Control"].startswith("no-store")
