"""
auth/oauth.py -- Authlib OAuth/OIDC provider registry and profile mapping.

Only providers with both client ID and secret configured get registered.
build_registry() is called once by the API lifespan; the registry lives on
app.state.oauth.

The protocol exchange (authorize redirect, code exchange, state/CSRF via
Starlette SessionMiddleware) is authlib's job. What a provider profile MEANS
for our identities is decided here and in auth/reconcile.py.

Security notes:
  [H1] Email verification is mandatory. fetch_sign_in_attempt() raises
       ValueError if the provider does not confirm the email is verified. An
       unverified provider email could belong to an attacker who added a
       victim's address without confirming it.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import AccountRef, Candidate, SignInAttempt
from core.config import Settings

logger = logging.getLogger("portcullis.auth.oauth")

_LABELS = {"github": "GitHub", "google": "Google"}


def build_registry(cfg: Settings) -> OAuth:
    """Return an authlib registry with every configured provider registered."""
    registry = OAuth()

    # GitHub -- static endpoints (no OIDC discovery document)
    if cfg.github_client_id and cfg.github_client_secret:
        registry.register(
            name="github",
            client_id=cfg.github_client_id,
            client_secret=cfg.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    # Google -- OIDC discovery
    if cfg.google_client_id and cfg.google_client_secret:
        registry.register(
            name="google",
            client_id=cfg.google_client_id,
            client_secret=cfg.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    return registry


def get_enabled_providers(cfg: Settings) -> list[dict]:
    """Return {"id", "name", "type"} for every sign-in method that is available.

    Credentials sign-in is always listed. Magic link needs an email transport
    to be useful, so it is listed only when RESEND_API_KEY is set (or in debug
    mode, where the console transport logs the link).
    """
    providers: list[dict] = []
    if cfg.github_client_id and cfg.github_client_secret:
        providers.append({"id": "github", "name": _LABELS["github"], "type": "oauth"})
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"id": "google", "name": _LABELS["google"], "type": "oauth"})
    if cfg.email_configured or cfg.debug:
        providers.append({"id": "email", "name": "Email", "type": "email"})
    providers.append({"id": "credentials", "name": "Credentials", "type": "credentials"})
    return providers


# ---------------------------------------------------------------------------
# Profile mapping
# ---------------------------------------------------------------------------


def map_profile(provider: str, profile: dict) -> dict:
    """Map provider-specific profile fields onto candidate fields {name, image}.

    google: name, picture
    github: name (falls back to login), avatar_url
    Fields the provider did not send are omitted so they never overwrite.
    """
    if provider == "google":
        mapped = {"name": profile.get("name"), "image": profile.get("picture")}
    elif provider == "github":
        mapped = {"name": profile.get("name") or profile.get("login"), "image": profile.get("avatar_url")}
    else:
        mapped = {"name": profile.get("name"), "image": profile.get("image")}
    return {key: value for key, value in mapped.items() if value}


# ---------------------------------------------------------------------------
# Provider exchange -> SignInAttempt [H1]
# ---------------------------------------------------------------------------


async def fetch_sign_in_attempt(client, provider: str, token: dict) -> SignInAttempt:
    """Turn an authlib token response into a SignInAttempt.

    Raises:
        ValueError: unknown provider, or a verified email cannot be confirmed.
    """
    if provider == "github":
        email, subject, profile = await _github_profile(client, token)
    elif provider == "google":
        email, subject, profile = _google_profile(token)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")

    mapped = map_profile(provider, profile)
    return SignInAttempt(
        candidate=Candidate(email=email.lower(), name=mapped.get("name"), image=mapped.get("image")),
        account=AccountRef(provider=provider, provider_account_id=subject),
        profile=profile,
    )


async def _github_profile(client, token: dict) -> tuple[str, str, dict]:
    """GitHub does not include the email in the token; two API calls are needed.

      1. GET /user -- profile with the numeric user ID (stable subject).
      2. GET /user/emails -- to find the primary verified email.

    [H1] Only the email where both primary=true AND verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email = next(
        (entry["email"] for entry in emails_resp.json() if entry.get("primary") and entry.get("verified")),
        None,
    )
    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before signing in."
        )
    return email, str(profile["id"]), profile


def _google_profile(token: dict) -> tuple[str, str, dict]:
    """Google returns an id_token whose parsed claims authlib puts under "userinfo".

    [H1] The email claim is only accepted when email_verified is True; a
    missing email_verified counts as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("google OAuth: no userinfo in token response")
    if not userinfo.get("email_verified", False):
        raise ValueError("google OAuth: email is not verified.")
    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError("google OAuth: missing email or sub claim in userinfo")
    return email, subject, dict(userinfo)
