"""
auth/flows.py -- Credential flows and the sign-in pipeline.

Each flow is a short saga over ResilientStore + RateLimiter + Mailer:

  signup               existing-email check BEFORE hashing, create identity
                       (unverified) + credentials account, issue a
                       verification token, send with retry. A send failure
                       does not roll back the identity.
  forgot_password      always the same answer; when the email exists, create
                       a 1h reset token and send. A send failure deletes the
                       token and raises ExternalServiceError.
  reset_password       absent / expired / used checks, then one transaction
                       (see IdentityStore.complete_password_reset).
  verify_email         token lookup, expiry, identifier match, stamp verified,
                       delete the token. Returns a redirect target.
  resend_verification  identity from the session or an email+password check,
                       drop all outstanding tokens, issue a fresh one.
  request_magic_link / magic_link_callback
                       email sign-in through a VerificationToken.
  sign_in              reconcile -> complete -> auto-verify -> issue token.

Password-reset tokens are consumed by flipping `used`; verification tokens
are consumed by deletion. The asymmetry is visible in the error messages
("already used" vs "invalid") and is kept on purpose.

Routes never touch the store directly for these operations.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlencode

from auth import signals
from auth.models import (
    OAUTH_PROVIDERS,
    AccountRef,
    Candidate,
    Identity,
    LinkedAccount,
    PasswordResetToken,
    SignInAttempt,
    VerificationToken,
)
from auth.reconcile import IdentityReconciler
from auth.resilient import ResilientStore
from auth.session import SessionTokenBuilder, auto_verify_oauth_email
from auth.signals import SignInError
from auth.tokens import (
    RESET_TOKEN_TTL,
    VERIFICATION_TOKEN_TTL,
    authenticate_identity,
    expires_in,
    generate_token,
    hash_password,
    is_expired,
)
from core.config import Settings
from core.errors import (
    AuthApiError,
    AuthenticationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
    ValidationError,
    VerificationEmailError,
)
from core.mailer import Mailer
from core.ratelimit import RateLimiter, RateLimitStatus

logger = logging.getLogger("portcullis.auth.flows")

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent."
RESET_SUCCESS_MESSAGE = "Password has been reset successfully"


@dataclass(frozen=True)
class RatePolicy:
    limit: int
    window_ms: int


@dataclass(frozen=True)
class SignupResult:
    identity: Identity
    verification_email_sent: bool


@dataclass(frozen=True)
class SignInResult:
    """Either a redirect target (sign-in refused or failed) or an issued session."""

    redirect: str | None = None
    identity: Identity | None = None
    token: str | None = None
    claims: dict | None = None

    @property
    def ok(self) -> bool:
        return self.redirect is None


def rate_policies(cfg: Settings) -> dict[str, RatePolicy]:
    return {
        "signup": RatePolicy(cfg.signup_rate_limit, cfg.signup_rate_window_ms),
        "forgot-password": RatePolicy(cfg.forgot_password_rate_limit, cfg.forgot_password_rate_window_ms),
        "reset-password": RatePolicy(cfg.reset_password_rate_limit, cfg.reset_password_rate_window_ms),
        "resend-verification": RatePolicy(
            cfg.resend_verification_rate_limit, cfg.resend_verification_rate_window_ms
        ),
        "magic-link": RatePolicy(cfg.magic_link_rate_limit, cfg.magic_link_rate_window_ms),
    }


class CredentialFlows:
    """Orchestrates every flow above. Built once by the API lifespan.

    Usage:
        flows = CredentialFlows(store, limiter, mailer, builder, settings)
        status = flows.enforce_rate_limit("signup", client_ip)
        result = flows.signup("a@b.com", "longenough1")
    """

    def __init__(
        self,
        store: ResilientStore,
        limiter: RateLimiter,
        mailer: Mailer,
        builder: SessionTokenBuilder,
        cfg: Settings,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.mailer = mailer
        self.builder = builder
        self.reconciler = IdentityReconciler(store)
        self.app_url = cfg.app_url.rstrip("/")
        self.auto_verify_inline = cfg.auto_verify_inline
        self.policies = rate_policies(cfg)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def enforce_rate_limit(self, name: str, identifier: str) -> RateLimitStatus:
        """Count one request against policy `name`. Raises RateLimitError (with headers) when over."""
        policy = self.policies[name]
        key = f"{name}:{identifier}"
        allowed = self.limiter.check(key, policy.limit, policy.window_ms)
        status = self.limiter.get_status(key, policy.limit, policy.window_ms)
        if not allowed:
            logger.warning("Rate limit exceeded for %s", name)
            exc = RateLimitError("Too many requests. Please try again later.")
            exc.headers = status.headers()
            raise exc
        return status

    # ------------------------------------------------------------------
    # Signup
    # ------------------------------------------------------------------

    def signup(self, email: str, password: str, name: str | None = None, image: str | None = None) -> SignupResult:
        if self.store.get_identity_by_email(email) is not None:
            raise ConflictError("User with this email already exists")

        digest = hash_password(password)
        try:
            identity = self.store.create_identity(
                Identity(email=email, name=name, image=image, password_digest=digest)
            )
        except ConflictError:
            raise ConflictError("User with this email already exists") from None
        self.store.link_account(LinkedAccount(identity.id, "credentials", str(identity.id)))
        logger.info("Signed up identity %s", identity.id)

        try:
            self._issue_verification(identity.email)
            sent = True
        except AuthApiError as exc:
            # The identity stays; the user can ask for a resend.
            logger.warning("Verification email not sent for identity %s: %s", identity.id, exc.message)
            sent = False
        return SignupResult(identity=identity, verification_email_sent=sent)

    def _issue_verification(self, email: str) -> None:
        token = generate_token()
        self.store.create_verification_token(VerificationToken(token, email, expires_in(VERIFICATION_TOKEN_TTL)))
        url = f"{self.app_url}/api/auth/verify-email?{urlencode({'token': token, 'email': email})}"
        self.mailer.send_with_retry(email, url, kind="verify")

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> str:
        identity = self.store.get_identity_by_email(email)
        if identity is None:
            logger.info("Password reset requested for unknown email")
            return FORGOT_PASSWORD_MESSAGE

        token = generate_token()
        self.store.create_reset_token(PasswordResetToken(token, identity.id, expires_in(RESET_TOKEN_TTL)))
        url = f"{self.app_url}/auth/reset-password?{urlencode({'token': token})}"
        try:
            self.mailer.send_with_retry(identity.email, url, kind="password-reset")
        except ExternalServiceError:
            # No usable token may outlive an undelivered email.
            self.store.delete_reset_token(token)
            raise
        return FORGOT_PASSWORD_MESSAGE

    def reset_password(self, token: str, password: str) -> str:
        record = self.store.get_reset_token(token)
        if record is None:
            raise ValidationError("Invalid or expired reset token")
        if is_expired(record.expires_at):
            self.store.delete_reset_token(token)
            raise ValidationError("Reset token has expired")
        if record.used:
            raise ValidationError("Reset token has already been used")

        if not self.store.complete_password_reset(token, hash_password(password)):
            # Lost a race with a concurrent reset using the same token.
            raise ValidationError("Reset token has already been used")

        identity = self.store.get_identity(record.identity_id)
        if identity is not None:
            policy = self.policies["forgot-password"]
            self.limiter.reset(f"forgot-password:{identity.email}", policy.limit, policy.window_ms)
        logger.info("Password reset completed for identity %s", record.identity_id)
        return RESET_SUCCESS_MESSAGE

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str | None, email: str | None) -> tuple[str, Identity | None]:
        """Returns (redirect location, verified identity or None)."""
        if not token or not email:
            return _verify_error("InvalidParameters"), None
        try:
            record = self.store.get_verification_token(token)
            if record is None:
                return _verify_error("InvalidToken"), None
            if is_expired(record.expires_at):
                self.store.delete_verification_token(token)
                return _verify_error("TokenExpired"), None
            if record.identifier.lower() != email.strip().lower():
                return _verify_error("EmailMismatch"), None

            found = self.store.lookup_identity_by_email(email)
            if not found.ok:
                logger.error("Email verification lookup failed: %s", found.failure.value)
                return _verify_error("ServerError"), None
            identity = found.value
            if identity is None:
                return _verify_error("InvalidToken"), None
            self.store.mark_email_verified(identity.id)
            self.store.delete_verification_token(token)
        except AuthApiError as exc:
            logger.error("Email verification failed: %s", exc.message)
            return _verify_error("ServerError"), None
        logger.info("Email verified for identity %s", identity.id)
        return f"{signals.SIGNIN_PAGE}?message=EmailVerified", identity

    def resend_verification(self, email: str, password: str | None = None, claims: dict | None = None) -> str:
        """Issue a fresh verification email for an identity the caller has proven to own."""
        if claims is not None:
            identity = self.store.get_identity(claims["user_id"])
            if identity is None:
                raise NotFoundError("User not found")
        elif password is not None:
            identity = authenticate_identity(self.store, email, password)
            if identity is None:
                raise AuthenticationError("Invalid credentials")
        else:
            raise AuthenticationError("Sign in or provide your password to resend the verification email")

        if identity.email_verified_at:
            raise ValidationError("Email is already verified")

        self.store.delete_verification_tokens_for(identity.email)
        try:
            self._issue_verification(identity.email)
        except ExternalServiceError as exc:
            raise VerificationEmailError(details=exc.details) from exc
        return "Verification email sent successfully"

    # ------------------------------------------------------------------
    # Magic link
    # ------------------------------------------------------------------

    def request_magic_link(self, email: str, callback_url: str | None = None) -> str:
        token = generate_token()
        self.store.create_verification_token(VerificationToken(token, email, expires_in(VERIFICATION_TOKEN_TTL)))
        params = {"token": token, "email": email}
        if callback_url:
            params["callbackUrl"] = callback_url
        url = f"{self.app_url}/api/auth/callback/email?{urlencode(params)}"
        try:
            self.mailer.send_with_retry(email, url, kind="signin")
        except ExternalServiceError:
            self.store.delete_verification_token(token)
            raise
        return "Check your email for a sign-in link"

    def magic_link_callback(self, token: str, email: str) -> SignInResult:
        try:
            record = self.store.use_verification_token(email, token)
        except AuthApiError as exc:
            logger.error("Magic link consumption failed: %s", exc.message)
            return SignInResult(redirect=signals.error_url(SignInError.VERIFICATION))
        if record is None or is_expired(record.expires_at):
            return SignInResult(redirect=signals.error_url(SignInError.VERIFICATION))
        attempt = SignInAttempt(
            candidate=Candidate(email=record.identifier),
            account=AccountRef(provider="email", provider_account_id=record.identifier),
        )
        return self.sign_in(attempt)

    # ------------------------------------------------------------------
    # Credentials sign-in
    # ------------------------------------------------------------------

    def credentials_sign_in(self, email: str, password: str) -> SignInResult:
        identity = authenticate_identity(self.store, email, password)
        if identity is None:
            return SignInResult(redirect=signals.error_url(SignInError.CREDENTIALS_SIGNIN))
        attempt = SignInAttempt(
            candidate=Candidate(email=identity.email, name=identity.name, image=identity.image),
            account=AccountRef(provider="credentials", provider_account_id=str(identity.id)),
        )
        return self.sign_in(attempt)

    # ------------------------------------------------------------------
    # Sign-in pipeline (all providers)
    # ------------------------------------------------------------------

    def sign_in(self, attempt: SignInAttempt, schedule: Callable[..., None] | None = None) -> SignInResult:
        """Reconcile, persist, verify (OAuth) and issue a session token.

        `schedule(fn, *args)` runs fn after the response is sent. When given
        and AUTO_VERIFY_INLINE is false, OAuth auto-verification is deferred to
        it and the token builder's settle wait + self-heal cover the gap.
        """
        decision = self.reconciler.reconcile(attempt)
        if not decision.allowed:
            return SignInResult(redirect=decision.redirect)
        outcome = self.reconciler.complete(decision)
        if isinstance(outcome, str):
            return SignInResult(redirect=outcome)
        identity = outcome

        provider = attempt.account.provider
        deferred = False
        if provider in OAUTH_PROVIDERS and identity.email_verified_at is None:
            if self.auto_verify_inline or schedule is None:
                auto_verify_oauth_email(self.store, identity.id)
            else:
                schedule(auto_verify_oauth_email, self.store, identity.id)
                deferred = True

        # Only a deferred verification write can still be in flight.
        token, claims = self.builder.issue(identity, provider, settle=deferred)
        logger.info("Identity %s signed in via %s", identity.id, provider)
        return SignInResult(identity=identity, token=token, claims=claims)

    # ------------------------------------------------------------------
    # Onboarding
    # ------------------------------------------------------------------

    def complete_onboarding(
        self, identity_id: int, bio: str | None, occupation: str | None, company: str | None
    ) -> Identity:
        identity = self.store.update_identity(
            identity_id,
            bio=bio or None,
            occupation=occupation or None,
            company=company or None,
            onboarding_completed=True,
        )
        if identity is None:
            raise NotFoundError("User not found")
        return identity


def _verify_error(code: str) -> str:
    return f"{signals.VERIFY_REQUEST_PAGE}?error={code}"
