"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Stores and flows do the
work; these only own the shape.

Timestamps are ISO 8601 strings in UTC, exactly as they are stored.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

OAUTH_PROVIDERS = frozenset({"google", "github"})
LOCAL_PROVIDERS = frozenset({"email", "credentials"})
PROVIDERS = OAUTH_PROVIDERS | LOCAL_PROVIDERS


@dataclass
class Identity:
    """A person who can sign in.

    email is the natural key and is always stored lowercase. password_digest is
    None for identities that have only signed in through OAuth or magic link.
    email_verified_at is None until the first verification event.
    """

    email: str
    id: int | None = None
    name: str | None = None
    image: str | None = None
    password_digest: str | None = None
    email_verified_at: str | None = None
    onboarding_completed: bool = False
    bio: str | None = None
    occupation: str | None = None
    company: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class LinkedAccount:
    """Binds an Identity to one sign-in provider.

    At most one per provider per identity; (provider, provider_account_id) is
    globally unique.
    """

    identity_id: int
    provider: str  # "google", "github", "email", "credentials"
    provider_account_id: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class Session:
    """Server-side ledger row for an issued session token (keyed by its sid claim)."""

    token: str
    identity_id: int
    expires_at: str


@dataclass
class VerificationToken:
    """One-time token shared by email verification links and magic-link sign-in."""

    token: str
    identifier: str  # the email address the token was issued for
    expires_at: str


@dataclass
class PasswordResetToken:
    token: str
    identity_id: int
    expires_at: str
    used: bool = False
    id: int | None = None
    created_at: str | None = None


@dataclass
class Candidate:
    """Who is trying to sign in, as reported by the provider (or the login form)."""

    email: str
    name: str | None = None
    image: str | None = None


@dataclass
class AccountRef:
    provider: str
    provider_account_id: str


@dataclass
class SignInAttempt:
    """Input to the reconciler: candidate user, provider account and raw profile."""

    candidate: Candidate
    account: AccountRef
    profile: dict = field(default_factory=dict)
