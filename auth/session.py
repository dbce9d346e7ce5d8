"""
auth/session.py -- Session token enrichment and OAuth auto-verification.

Token lifecycle:
  unenriched  claims copied from the sign-in identity and provider
  enriched    email_verified / onboarding_completed read from the
              authoritative identity row
  refreshed   the same read, repeated at most once per SESSION_UPDATE_AGE

Rules applied by SessionTokenBuilder.build():
  1. trigger="signIn" with an OAuth provider: optionally sleep a short
     settle period (capped at 200ms) before reading, unless the caller
     already wrote the verification inline.
  2. Read the identity through ResilientStore. Found: copy the two flags.
     Not found (read miss or outage): keep the previous claim values.
  3. trigger="signIn" and still unverified: if the identity has an OAuth
     account, stamp email_verified_at once. Write failures are logged and
     swallowed.
  4. trigger="update" runs step 2 only.

build() never raises because of persistence: the worst outcome is a token
carrying the previous (stale) flags.

The session ledger (sessions table, keyed by the `sid` claim) is written on a
best-effort basis by issue()/reissue()/revoke(). Gating never reads it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.models import OAUTH_PROVIDERS, Identity, Session
from auth.resilient import ResilientStore
from auth.tokens import encode_session, new_session_id, now_iso
from core.errors import AuthApiError

logger = logging.getLogger("portcullis.auth.session")

MAX_SETTLE_MS = 200


def identity_claims(identity: Identity, provider: str) -> dict:
    """Unenriched claims for a freshly signed-in identity."""
    return {
        "sub": str(identity.id),
        "user_id": identity.id,
        "email": identity.email,
        "name": identity.name,
        "picture": identity.image,
        "email_verified": identity.email_verified_at,
        "onboarding_completed": identity.onboarding_completed,
        "provider": provider,
        "sid": new_session_id(),
    }


def auto_verify_oauth_email(store: ResilientStore, identity_id: int) -> None:
    """Idempotently mark an OAuth identity's email verified. Never raises.

    OAuth providers have already confirmed the address (see [H1] in
    auth/oauth.py), so the first OAuth sign-in is a verification event.
    """
    try:
        if store.mark_email_verified(identity_id):
            logger.info("Auto-verified email for OAuth identity %s", identity_id)
    except AuthApiError as exc:
        logger.warning("Auto-verification failed for identity %s: %s", identity_id, exc.message)


class SessionTokenBuilder:
    """Builds, refreshes and records session tokens.

    Usage:
        builder = SessionTokenBuilder(resilient_store, settle_ms=100, update_age=86400, max_age=2592000)
        token, claims = builder.issue(identity, provider="github")
        if builder.needs_refresh(claims):
            token, claims = builder.reissue(claims)
    """

    def __init__(
        self,
        store: ResilientStore,
        settle_ms: int = 100,
        update_age: int = 24 * 60 * 60,
        max_age: int = 30 * 24 * 60 * 60,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settle_ms = max(0, min(settle_ms, MAX_SETTLE_MS))
        self.update_age = update_age
        self.max_age = max_age
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    def build(
        self,
        claims: dict,
        identity: Identity | None = None,
        provider: str | None = None,
        trigger: str = "signIn",
        settle: bool = True,
    ) -> dict:
        """Return enriched claims. Pure with respect to the input dict.

        settle=False skips the OAuth settle wait; callers pass it when the
        identity row was already written in this request.
        """
        claims = dict(claims)
        if trigger == "signIn" and identity is not None:
            claims.update(identity_claims(identity, provider or claims.get("provider")))
            if settle and claims["provider"] in OAUTH_PROVIDERS and self.settle_ms:
                self._sleep(self.settle_ms / 1000)

        identity_id = claims.get("user_id")
        if identity_id is None:
            return claims

        self._copy_flags(claims, self.store.get_identity(identity_id))

        if trigger == "signIn" and not claims.get("email_verified"):
            self._self_heal(identity_id, claims)
        return claims

    def _copy_flags(self, claims: dict, identity: Identity | None) -> None:
        if identity is None:
            # Read miss: keep what the token already says.
            return
        claims["email_verified"] = identity.email_verified_at
        claims["onboarding_completed"] = identity.onboarding_completed

    def _self_heal(self, identity_id: int, claims: dict) -> None:
        accounts = self.store.list_accounts(identity_id)
        if not any(account.provider in OAUTH_PROVIDERS for account in accounts):
            return
        try:
            self.store.mark_email_verified(identity_id)
        except AuthApiError as exc:
            logger.warning("Self-heal verification failed for identity %s: %s", identity_id, exc.message)
            return
        logger.info("Self-healed missing email verification for OAuth identity %s", identity_id)
        fresh = self.store.get_identity(identity_id)
        claims["email_verified"] = fresh.email_verified_at if fresh and fresh.email_verified_at else now_iso()

    def needs_refresh(self, claims: dict) -> bool:
        return self._clock() - claims.get("iat", 0) > self.update_age

    # ------------------------------------------------------------------
    # Issue / refresh / revoke (token + ledger)
    # ------------------------------------------------------------------

    def issue(self, identity: Identity, provider: str, settle: bool = True) -> tuple[str, dict]:
        claims = self.build({}, identity=identity, provider=provider, trigger="signIn", settle=settle)
        self._record(claims, create=True)
        return self._sign(claims)

    def reissue(self, claims: dict) -> tuple[str, dict]:
        fresh = self.build(claims, trigger="update")
        self._record(fresh, create=False)
        return self._sign(fresh)

    def revoke(self, claims: dict) -> None:
        if claims.get("sid"):
            self.store.delete_session(claims["sid"])

    def _sign(self, claims: dict) -> tuple[str, dict]:
        claims = {k: v for k, v in claims.items() if k not in ("iat", "exp")}
        issued_at = int(self._clock())
        token = encode_session(claims, issued_at=issued_at, max_age=self.max_age)
        claims["iat"] = issued_at
        claims["exp"] = issued_at + self.max_age
        return token, claims

    def _record(self, claims: dict, create: bool) -> None:
        expires_at = (datetime.now(timezone.utc) + timedelta(seconds=self.max_age)).isoformat()
        try:
            if create:
                self.store.create_session(Session(claims["sid"], claims["user_id"], expires_at))
            else:
                self.store.update_session(claims["sid"], expires_at)
        except AuthApiError as exc:
            logger.warning("Session ledger write failed for identity %s: %s", claims.get("user_id"), exc.message)
