"""
auth/signals.py -- Redirect-signal error codes surfaced as ?error= on auth pages.

The code set is closed; describe() is a pure lookup with Default as the
fallback, so an attacker-controlled ?error= value can never reflect arbitrary
text back into a page.
"""

from __future__ import annotations

from enum import Enum
from urllib.parse import quote


class SignInError(str, Enum):
    CONFIGURATION = "Configuration"
    ACCESS_DENIED = "AccessDenied"
    VERIFICATION = "Verification"
    OAUTH_SIGNIN = "OAuthSignin"
    OAUTH_CALLBACK = "OAuthCallback"
    OAUTH_CREATE_ACCOUNT = "OAuthCreateAccount"
    EMAIL_CREATE_ACCOUNT = "EmailCreateAccount"
    CALLBACK = "Callback"
    OAUTH_ACCOUNT_NOT_LINKED = "OAuthAccountNotLinked"
    EMAIL_SIGNIN = "EmailSignin"
    CREDENTIALS_SIGNIN = "CredentialsSignin"
    SESSION_REQUIRED = "SessionRequired"
    DATABASE_ERROR = "DatabaseError"
    DEFAULT = "Default"


# code -> (title, message)
_MESSAGES: dict[SignInError, tuple[str, str]] = {
    SignInError.CONFIGURATION: (
        "Server Configuration Error",
        "There is a problem with the authentication service configuration. Please contact support.",
    ),
    SignInError.ACCESS_DENIED: (
        "Access Denied",
        "You don't have permission to sign in. Your account may be restricted or disabled.",
    ),
    SignInError.VERIFICATION: (
        "Verification Error",
        "The verification token has expired or has already been used. Please request a new sign-in link.",
    ),
    SignInError.OAUTH_SIGNIN: (
        "OAuth Sign-in Error",
        "There was an error creating the authorization URL. Please try again.",
    ),
    SignInError.OAUTH_CALLBACK: (
        "OAuth Callback Error",
        "There was an error handling the response from the OAuth provider. Please try again.",
    ),
    SignInError.OAUTH_CREATE_ACCOUNT: (
        "OAuth Account Creation Failed",
        "Could not create your account with the OAuth provider. The email may already be in use.",
    ),
    SignInError.EMAIL_CREATE_ACCOUNT: (
        "Email Account Creation Failed",
        "Could not create your account with email. The email may already be in use.",
    ),
    SignInError.CALLBACK: (
        "Callback Error",
        "There was an error in the OAuth callback handler. Please try again.",
    ),
    SignInError.OAUTH_ACCOUNT_NOT_LINKED: (
        "Account Not Linked",
        "This email is already associated with another account. "
        "Please sign in with your original provider or use a different email.",
    ),
    SignInError.EMAIL_SIGNIN: (
        "Email Sign-in Error",
        "Could not send the email. Please check your email address and try again.",
    ),
    SignInError.CREDENTIALS_SIGNIN: (
        "Invalid Credentials",
        "The credentials you provided are incorrect. Please check and try again.",
    ),
    SignInError.SESSION_REQUIRED: (
        "Session Required",
        "You must be signed in to access this page. Please sign in and try again.",
    ),
    SignInError.DATABASE_ERROR: (
        "Database Unavailable",
        "We could not reach the account database. Please try again in a few minutes.",
    ),
    SignInError.DEFAULT: (
        "Authentication Error",
        "An unexpected error occurred during authentication. Please try again.",
    ),
}

# Redirect targets used by the sign-in pipeline.
DATABASE_SETUP = "/auth/database-setup"
ERROR_PAGE = "/auth/error"
SIGNIN_PAGE = "/auth/signin"
VERIFY_REQUEST_PAGE = "/auth/verify-request"


def parse(code: str | None) -> SignInError:
    """Return the matching SignInError, or DEFAULT for unknown / missing codes."""
    try:
        return SignInError(code)
    except ValueError:
        return SignInError.DEFAULT


def describe(code: str | None) -> dict:
    """Title and message for a ?error= code. Unknown codes describe as Default."""
    error = parse(code)
    title, message = _MESSAGES[error]
    return {"error": error.value, "title": title, "message": message}


def error_url(error: SignInError) -> str:
    return f"{ERROR_PAGE}?error={error.value}"


def signin_url(callback_url: str | None = None, error: SignInError | None = None) -> str:
    params = []
    if error is not None:
        params.append(f"error={error.value}")
    if callback_url:
        params.append(f"callbackUrl={quote(callback_url, safe='/')}")
    return SIGNIN_PAGE + ("?" + "&".join(params) if params else "")


def safe_next(next_url: str | None) -> str:
    """Validate a post-sign-in redirect target. Only relative paths pass. [C2]

    Rejects absolute URLs (https://attacker.com) and protocol-relative ones
    (//attacker.com); both would leave the site after sign-in.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return "/"


def code_from_url(url: str | None) -> SignInError:
    """Recover the signal code from a redirect produced by the sign-in pipeline."""
    if url == DATABASE_SETUP:
        return SignInError.DATABASE_ERROR
    return parse(url.partition("error=")[2] if url else None)
