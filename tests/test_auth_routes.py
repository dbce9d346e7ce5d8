"""
tests/test_auth_routes.py -- HTTP-level tests for the auth, OAuth and user routers.

Every test goes through the real app (middleware, gate, exception handlers)
with an in-memory store and a RecordingMailer. Redirects are not followed so
their Location headers can be asserted.

Covers:
  - signup -> verify link -> credentials sign-in -> session -> onboarding
  - validation errors, duplicate signup, flow rate limits and window expiry
  - forgot/reset password over HTTP, single-use reset tokens
  - magic link request and callback
  - the route gate for pages and for /api paths (401 and 403 JSON)
  - providers, error descriptions, sign-out
  - OAuth redirect/callback with a mocked authlib registry
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from auth.tokens import SESSION_COOKIE

PASSWORD = "correct-horse-1"


def _signup(client, email="ada@example.com", **extra):
    return client.post("/api/auth/signup", json={"email": email, "password": PASSWORD, **extra})


def _verify(client, mailer):
    link = mailer.last_link("verify")
    return client.get("/api/auth/verify-email", params={"token": link["token"], "email": link["email"]})


def _sign_in(client, email="ada@example.com", password=PASSWORD):
    return client.post("/api/auth/callback/credentials", json={"email": email, "password": password})


class TestSignup:
    def test_signup_sends_verification_link(self, client, mailer):
        resp = _signup(client, name="Ada")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["user"]["email"] == "ada@example.com"
        assert body["user"]["name"] == "Ada"
        assert body["verificationEmailSent"] is True
        assert resp.headers["X-RateLimit-Limit"] == "5"
        assert mailer.last_link("verify")["email"] == "ada@example.com"

    def test_invalid_email_is_400_with_field_message(self, client):
        resp = client.post("/api/auth/signup", json={"email": "not-an-email", "password": PASSWORD})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["code"] == "VALIDATION_ERROR"
        assert body["error"] == "Invalid email format"

    def test_short_password_rejected(self, client):
        resp = client.post("/api/auth/signup", json={"email": "ada@example.com", "password": "short"})
        assert resp.status_code == 400
        assert "at least 8" in resp.json()["error"]

    def test_duplicate_is_409(self, client):
        _signup(client)
        resp = _signup(client)
        assert resp.status_code == 409
        assert resp.json()["code"] == "CONFLICT"

    def test_rate_limited_after_five(self, client):
        for i in range(5):
            assert _signup(client, email=f"user{i}@example.com").status_code == 200
        resp = _signup(client, email="user5@example.com")
        assert resp.status_code == 429
        assert resp.json()["code"] == "RATE_LIMIT_ERROR"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert "X-RateLimit-Reset" in resp.headers

    def test_limit_lifts_when_window_elapses(self, client, frozen_time):
        for i in range(5):
            _signup(client, email=f"user{i}@example.com")
        assert _signup(client, email="user5@example.com").status_code == 429
        frozen_time.advance(61)
        resp = _signup(client, email="user5@example.com")
        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Remaining"] == "4"

    @pytest.mark.parametrize("email", ["ada@example..com", "ada@@example.com", "@example.com"])
    def test_malformed_addresses_rejected(self, client, email):
        resp = client.post("/api/auth/signup", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid email format"


class TestVerifyAndSignIn:
    def test_full_credentials_journey(self, client, mailer):
        _signup(client)

        resp = _verify(client, mailer)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/signin?message=EmailVerified"

        resp = _sign_in(client)
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "ada@example.com"
        assert resp.headers["Cache-Control"] == "no-store"
        assert client.cookies.get(SESSION_COOKIE)

        session = client.get("/api/auth/session").json()
        assert session["user"]["email"] == "ada@example.com"
        assert session["user"]["emailVerified"] is not None
        assert session["user"]["onboardingCompleted"] is False
        assert session["provider"] == "credentials"

        # Verified but not onboarded: pages bounce to /onboarding.
        resp = client.get("/dashboard")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/onboarding"

        resp = client.post("/api/user/onboarding", json={"occupation": "Engines"})
        assert resp.status_code == 200
        assert resp.json()["message"] == "Onboarding completed successfully"
        assert client.get("/api/auth/session").json()["user"]["onboardingCompleted"] is True

        # Onboarded: /onboarding and /auth/* bounce home, protected pages pass to routing.
        assert client.get("/onboarding").headers["location"] == "/"
        assert client.get("/auth/signin").headers["location"] == "/"
        assert client.get("/dashboard").status_code == 404

    def test_unverified_session_sent_to_verify_request(self, client):
        _signup(client)
        assert _sign_in(client).status_code == 200
        resp = client.get("/profile")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/verify-request"

    def test_unverified_session_cannot_onboard_over_api(self, client):
        _signup(client)
        _sign_in(client)
        resp = client.post("/api/user/onboarding", json={"occupation": "Engines"})
        assert resp.status_code == 403
        body = resp.json()
        assert body["code"] == "EMAIL_NOT_VERIFIED"
        assert body["url"] == "/auth/verify-request"
        assert client.get("/api/auth/session").json()["user"]["onboardingCompleted"] is False

    def test_verify_link_reissues_cookie_for_signed_in_user(self, client, mailer):
        _signup(client)
        _sign_in(client)
        resp = _verify(client, mailer)
        assert resp.status_code == 302
        assert SESSION_COOKIE in resp.headers.get("set-cookie", "")
        assert client.get("/api/auth/session").json()["user"]["emailVerified"] is not None

    def test_bad_verify_link(self, client):
        resp = client.get("/api/auth/verify-email", params={"token": "nope", "email": "ada@example.com"})
        assert resp.headers["location"] == "/auth/verify-request?error=InvalidToken"

    def test_wrong_password_is_401(self, client):
        _signup(client)
        resp = _sign_in(client, password="not-the-password")
        assert resp.status_code == 401
        body = resp.json()
        assert body["code"] == "CredentialsSignin"
        assert body["url"] == "/auth/error?error=CredentialsSignin"
        assert SESSION_COOKIE not in resp.headers.get("set-cookie", "")

    def test_resend_verification_with_password(self, client, mailer):
        _signup(client)
        resp = client.post(
            "/api/auth/resend-verification", json={"email": "ada@example.com", "password": PASSWORD}
        )
        assert resp.status_code == 200
        assert len([kind for _, _, kind in mailer.sent if kind == "verify"]) == 2

    def test_resend_verification_without_proof_is_401(self, client):
        _signup(client)
        resp = client.post("/api/auth/resend-verification", json={"email": "ada@example.com"})
        assert resp.status_code == 401

    def test_resend_verification_with_session(self, client):
        _signup(client)
        _sign_in(client)
        resp = client.post("/api/auth/resend-verification", json={"email": "ada@example.com"})
        assert resp.status_code == 200


class TestPasswordReset:
    def test_forgot_and_reset(self, client, mailer):
        _signup(client)
        resp = client.post("/api/auth/forgot-password", json={"email": "ada@example.com"})
        assert resp.status_code == 200
        token = mailer.last_link("password-reset")["token"]

        resp = client.post("/api/auth/reset-password", json={"token": token, "password": "brand-new-pass"})
        assert resp.status_code == 200
        assert _sign_in(client, password="brand-new-pass").status_code == 200

    def test_unknown_email_same_answer(self, client):
        resp = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    def test_reset_token_is_single_use(self, client, mailer):
        _signup(client)
        client.post("/api/auth/forgot-password", json={"email": "ada@example.com"})
        token = mailer.last_link("password-reset")["token"]

        first = client.post("/api/auth/reset-password", json={"token": token, "password": "brand-new-pass"})
        assert first.status_code == 200
        second = client.post("/api/auth/reset-password", json={"token": token, "password": "another-pass-2"})
        assert second.status_code == 400
        assert second.json()["error"] == "Reset token has already been used"
        assert _sign_in(client, password="brand-new-pass").status_code == 200

    def test_bad_token_is_400(self, client):
        resp = client.post("/api/auth/reset-password", json={"token": "nope", "password": "brand-new-pass"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid or expired reset token"


class TestMagicLink:
    def test_request_then_callback_signs_in(self, client, mailer):
        resp = client.post("/api/auth/signin/email", json={"email": "new@example.com", "callbackUrl": "/dashboard"})
        assert resp.status_code == 200
        link = mailer.last_link("signin")

        resp = client.get("/api/auth/callback/email", params=link)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard"
        assert resp.headers["Cache-Control"] == "no-store"
        assert client.get("/api/auth/session").json()["provider"] == "email"

    def test_open_redirect_is_neutralised(self, client, mailer):
        client.post(
            "/api/auth/signin/email", json={"email": "new@example.com", "callbackUrl": "https://attacker.example"}
        )
        link = mailer.last_link("signin")
        assert link["callbackUrl"] == "/"

    def test_missing_params(self, client):
        resp = client.get("/api/auth/callback/email")
        assert resp.headers["location"] == "/auth/error?error=Verification"


class TestGate:
    def test_protected_page_without_session_redirects_to_signin(self, client):
        resp = client.get("/dashboard")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/signin?callbackUrl=/dashboard"

    def test_user_api_without_session_is_401(self, client):
        resp = client.post("/api/user/onboarding", json={})
        assert resp.status_code == 401
        assert resp.json()["code"] == "AUTHENTICATION_ERROR"

    def test_tampered_cookie_is_cleared(self, client):
        client.cookies.set(SESSION_COOKIE, "not-a-jwt")
        resp = client.get("/")
        assert SESSION_COOKIE in resp.headers.get("set-cookie", "")

    def test_session_when_signed_out_is_empty(self, client):
        assert client.get("/api/auth/session").json() == {}


class TestProvidersAndSignals:
    def test_providers(self, client):
        providers = {p["id"]: p for p in client.get("/api/auth/providers").json()}
        assert providers["credentials"]["signinUrl"] == "/api/auth/signin/credentials"
        assert "email" in providers  # DEBUG=true in tests

    @pytest.mark.parametrize(
        "code, expected",
        [("OAuthAccountNotLinked", "OAuthAccountNotLinked"), ("<b>", "Default"), (None, "Default")],
    )
    def test_error_describe(self, client, code, expected):
        params = {"error": code} if code else {}
        body = client.get("/api/auth/error", params=params).json()
        assert body["error"] == expected
        assert body["title"]

    def test_signout_clears_cookie(self, client):
        _signup(client)
        _sign_in(client)
        resp = client.post("/api/auth/signout")
        assert resp.json() == {"success": True, "url": "/auth/signin"}
        assert SESSION_COOKIE in resp.headers["set-cookie"]
        assert client.get("/api/auth/session").json() == {}


class TestOAuthRoutes:
    def test_unconfigured_provider_redirects_to_error(self, client):
        resp = client.get("/api/auth/signin/github")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/error?error=OAuthSignin"

    def test_unknown_provider_callback(self, client):
        resp = client.get("/api/auth/callback/myspace")
        assert resp.headers["location"] == "/auth/error?error=OAuthSignin"

    def _mock_google(self, token):
        oauth_client = MagicMock()
        oauth_client.authorize_access_token = AsyncMock(return_value=token)
        registry = MagicMock()
        registry.create_client.return_value = oauth_client
        return registry

    def test_google_callback_signs_in(self, client):
        from api.main import app

        token = {"userinfo": {"sub": "g-1", "email": "ada@example.com", "email_verified": True, "name": "Ada"}}
        app.state.oauth = self._mock_google(token)
        with patch("api.routes.oauth._enabled", return_value=True):
            resp = client.get("/api/auth/callback/google", params={"code": "c", "state": "s"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        session = client.get("/api/auth/session").json()
        assert session["user"]["email"] == "ada@example.com"
        assert session["provider"] == "google"

    def test_unverified_provider_email_refused(self, client):
        from api.main import app

        token = {"userinfo": {"sub": "g-1", "email": "ada@example.com", "email_verified": False}}
        app.state.oauth = self._mock_google(token)
        with patch("api.routes.oauth._enabled", return_value=True):
            resp = client.get("/api/auth/callback/google", params={"code": "c", "state": "s"})
        assert resp.headers["location"] == "/auth/error?error=OAuthCallback"
        assert client.get("/api/auth/session").json() == {}
