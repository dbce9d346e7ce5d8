"""
tests/test_signals_and_validators.py -- Redirect-signal lookup and input rules.

Pure functions only: no fixtures, no shared state.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from api.models import EmailRequest
from auth import signals
from auth.signals import SignInError
from auth.validators import check_email_typo, require_email, validate_name, validate_password


class TestSignals:
    def test_every_code_has_distinct_copy(self):
        described = [signals.describe(code.value) for code in SignInError]
        assert len({d["title"] for d in described}) == len(SignInError)
        assert len({d["message"] for d in described}) == len(SignInError)

    @pytest.mark.parametrize("code", [None, "", "<script>alert(1)</script>", "oauthsignin"])
    def test_unknown_codes_fall_back_to_default(self, code):
        assert signals.describe(code)["error"] == "Default"

    def test_database_error_title(self):
        assert signals.describe("DatabaseError")["title"] == "Database Unavailable"

    def test_signin_url(self):
        assert signals.signin_url() == "/auth/signin"
        assert (
            signals.signin_url(callback_url="/settings/a b", error=SignInError.SESSION_REQUIRED)
            == "/auth/signin?error=SessionRequired&callbackUrl=/settings/a%20b"
        )

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("/dashboard", "/dashboard"),
            ("https://attacker.example", "/"),
            ("//attacker.example", "/"),
            ("/\\attacker.example", "/"),
            (None, "/"),
        ],
    )
    def test_safe_next(self, url, expected):
        assert signals.safe_next(url) == expected

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("/auth/error?error=OAuthAccountNotLinked", SignInError.OAUTH_ACCOUNT_NOT_LINKED),
            (signals.DATABASE_SETUP, SignInError.DATABASE_ERROR),
            ("/auth/error", SignInError.DEFAULT),
        ],
    )
    def test_code_from_url(self, url, expected):
        assert signals.code_from_url(url) is expected


class TestEmail:
    def test_normalised(self):
        assert EmailRequest(email="  Ada@Example.COM ").email == "ada@example.com"

    @pytest.mark.parametrize(
        "value, message",
        [
            ("", "Email is required"),
            ("not-an-email", "not a valid email address"),
            ("a@b", "not a valid email address"),
            ("ada@@example.com", "not a valid email address"),
            ("x" * 320 + "@example.com", "not a valid email address"),
            ("ada@gmai.com", r"Did you mean ada@gmail.com\?"),
        ],
    )
    def test_rejected(self, value, message):
        with pytest.raises(PydanticValidationError, match=message):
            EmailRequest(email=value)

    def test_typo_check_leaves_other_domains_alone(self):
        assert check_email_typo("ada@gmail.com") == "ada@gmail.com"
        with pytest.raises(ValueError, match="outlook.com"):
            check_email_typo("ada@outlok.com")

    def test_require_email(self):
        assert require_email(" A@B.io ") == "a@b.io"
        with pytest.raises(ValueError, match="required"):
            require_email(None)


class TestPassword:
    def test_bounds(self):
        assert validate_password("x" * 8) == "x" * 8
        with pytest.raises(ValueError, match="at least 8"):
            validate_password("short")
        with pytest.raises(ValueError, match="less than 128"):
            validate_password("x" * 129)


class TestName:
    def test_blank_means_absent(self):
        assert validate_name(None) is None
        assert validate_name("   ") is None

    def test_trimmed(self):
        assert validate_name("  Ada ") == "Ada"

    def test_length(self):
        with pytest.raises(ValueError, match="between 2 and 50"):
            validate_name("A")
