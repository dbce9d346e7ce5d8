"""
auth/reconcile.py -- Decide whether a sign-in attempt may proceed, then apply it.

Two steps, kept apart on purpose:

  IdentityReconciler.reconcile()  pure decision, reads only. Safe to call
                                  twice for the same attempt.
  IdentityReconciler.complete()   applies an "allow" decision: creates the
                                  identity when absent, links the provider
                                  account when missing.

Rules (first match wins):
  1. Local providers (email magic link, credentials): an identity that has
     OAuth accounts but no local account is NOT merged -- the attempt is
     redirected with OAuthAccountNotLinked.
  2. OAuth providers: a provider account already linked decides the identity.
     Otherwise an identity with the same email is linked (email equality is
     the only natural key).
  3. Lookup failed with CONNECTION or SCHEMA_MISSING -> /auth/database-setup.
  4. Any other lookup failure -> /auth/error?error=Default.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from auth import signals
from auth.models import LOCAL_PROVIDERS, OAUTH_PROVIDERS, Identity, LinkedAccount, SignInAttempt
from auth.oauth import map_profile
from auth.resilient import ResilientStore
from auth.signals import SignInError
from auth.tokens import now_iso
from core.errors import ConflictError, ServiceUnavailable, StoreFailure

logger = logging.getLogger("portcullis.auth.reconcile")


@dataclass(frozen=True)
class SignInDecision:
    """allow=True with the (possibly absent) existing identity, or a redirect target."""

    allowed: bool
    redirect: str | None = None
    identity: Identity | None = None
    attempt: SignInAttempt | None = None

    @classmethod
    def allow(cls, attempt: SignInAttempt, identity: Identity | None = None) -> SignInDecision:
        return cls(allowed=True, identity=identity, attempt=attempt)

    @classmethod
    def deny(cls, location: str) -> SignInDecision:
        return cls(allowed=False, redirect=location)


def failure_redirect(failure: StoreFailure, fallback: SignInError = SignInError.DEFAULT) -> str:
    """Where to send the browser when persistence failed during sign-in."""
    if failure in (StoreFailure.CONNECTION, StoreFailure.SCHEMA_MISSING):
        return signals.DATABASE_SETUP
    return signals.error_url(fallback)


class IdentityReconciler:
    def __init__(self, store: ResilientStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def reconcile(self, attempt: SignInAttempt) -> SignInDecision:
        provider = attempt.account.provider
        if provider in OAUTH_PROVIDERS:
            attempt = _with_mapped_profile(attempt)
            by_account = self.store.lookup_identity_by_account(provider, attempt.account.provider_account_id)
            if not by_account.ok:
                return SignInDecision.deny(failure_redirect(by_account.failure))
            if by_account.value is not None:
                return SignInDecision.allow(attempt, by_account.value)

        found = self.store.lookup_identity_by_email(attempt.candidate.email)
        if not found.ok:
            return SignInDecision.deny(failure_redirect(found.failure))
        identity = found.value
        if identity is None:
            return SignInDecision.allow(attempt)

        accounts = self.store.lookup_accounts(identity.id)
        if not accounts.ok:
            return SignInDecision.deny(failure_redirect(accounts.failure))
        linked = {account.provider for account in accounts.value}

        if provider in LOCAL_PROVIDERS:
            if linked & OAUTH_PROVIDERS and not linked & LOCAL_PROVIDERS:
                logger.info("Refusing %s sign-in for OAuth-only identity %s", provider, identity.id)
                return SignInDecision.deny(signals.error_url(SignInError.OAUTH_ACCOUNT_NOT_LINKED))
            return SignInDecision.allow(attempt, identity)

        if provider in linked:
            # Same email, same provider, different provider account.
            logger.warning("Identity %s already has a different %s account", identity.id, provider)
            return SignInDecision.deny(signals.error_url(SignInError.OAUTH_ACCOUNT_NOT_LINKED))
        return SignInDecision.allow(attempt, identity)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete(self, decision: SignInDecision) -> Identity | str:
        """Apply an allow decision. Returns the signed-in Identity, or a redirect URL on failure."""
        if not decision.allowed:
            return decision.redirect
        attempt = decision.attempt
        provider = attempt.account.provider
        create_error = SignInError.EMAIL_CREATE_ACCOUNT if provider == "email" else SignInError.OAUTH_CREATE_ACCOUNT
        try:
            identity = decision.identity or self._create(attempt)
            self._link_if_missing(identity, attempt)
            identity = self._refresh_profile(identity, attempt)
        except ConflictError:
            logger.warning("Concurrent sign-in created %s for %s first", provider, attempt.candidate.email)
            return signals.error_url(create_error)
        except ServiceUnavailable as exc:
            return failure_redirect(exc.failure, create_error)
        return identity

    def _create(self, attempt: SignInAttempt) -> Identity:
        candidate = attempt.candidate
        # Following a magic link proves ownership of the address.
        verified_at = now_iso() if attempt.account.provider == "email" else None
        identity = self.store.create_identity(
            Identity(email=candidate.email, name=candidate.name, image=candidate.image, email_verified_at=verified_at)
        )
        logger.info("Created identity %s via %s", identity.id, attempt.account.provider)
        return identity

    def _link_if_missing(self, identity: Identity, attempt: SignInAttempt) -> None:
        linked = {account.provider for account in self.store.list_accounts(identity.id)}
        if attempt.account.provider in linked:
            return
        self.store.link_account(
            LinkedAccount(
                identity_id=identity.id,
                provider=attempt.account.provider,
                provider_account_id=attempt.account.provider_account_id,
            )
        )
        logger.info("Linked %s account to identity %s", attempt.account.provider, identity.id)

    def _refresh_profile(self, identity: Identity, attempt: SignInAttempt) -> Identity:
        provider = attempt.account.provider
        if provider == "email" and identity.email_verified_at is None:
            self.store.mark_email_verified(identity.id)
            identity = replace(identity, email_verified_at=now_iso())
        if provider not in OAUTH_PROVIDERS:
            return identity
        # Provider data only fills gaps; a name the user chose is kept.
        updates: dict = {}
        if attempt.candidate.name and not identity.name:
            updates["name"] = attempt.candidate.name
        if attempt.candidate.image and not identity.image:
            updates["image"] = attempt.candidate.image
        if not updates:
            return identity
        return self.store.update_identity(identity.id, **updates) or identity


def _with_mapped_profile(attempt: SignInAttempt) -> SignInAttempt:
    mapped = map_profile(attempt.account.provider, attempt.profile)
    candidate = replace(
        attempt.candidate,
        name=mapped.get("name", attempt.candidate.name),
        image=mapped.get("image", attempt.candidate.image),
    )
    return replace(attempt, candidate=candidate)
