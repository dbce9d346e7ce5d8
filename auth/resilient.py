"""
auth/resilient.py -- Failure-isolating adapter around IdentityStore.

Every persistence call goes through the database CircuitBreaker, and every
failure is classified exactly once, here, into a core.errors.StoreFailure.
Nothing downstream inspects driver exceptions.

Failure policy by operation kind:
  reads    log and return None / [] (the lookup_* variants also report the
           StoreFailure, for callers that route on it)
  writes   log and raise ServiceUnavailable(failure=...). Unique-constraint
           violations raise ConflictError instead and do not trip the breaker.
  deletes  log and swallow

Messages shown to users never include driver text; it goes to `details`,
which the API only renders in debug mode.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.models import Identity, LinkedAccount, PasswordResetToken, Session, VerificationToken
from auth.store import IdentityStore
from core.breaker import CircuitBreaker
from core.errors import CircuitOpenError, ConflictError, ServiceUnavailable, StoreFailure

logger = logging.getLogger("portcullis.auth.resilient")

T = TypeVar("T")

_SCHEMA_MARKERS = ("no such table", "no such column", "does not exist", "undefined table", "undefinedtable")


@dataclass(frozen=True)
class ReadResult(Generic[T]):
    """Outcome of a read: the value (None / empty on failure) and why it failed, if it did."""

    value: T
    failure: StoreFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def classify_failure(exc: BaseException) -> StoreFailure:
    """Map an exception raised under the breaker to a StoreFailure."""
    if isinstance(exc, CircuitOpenError):
        return StoreFailure.UNAVAILABLE
    if isinstance(exc, IntegrityError):
        return StoreFailure.CONSTRAINT
    message = str(getattr(exc, "orig", None) or exc).lower()
    if isinstance(exc, (OperationalError, ProgrammingError)) and any(m in message for m in _SCHEMA_MARKERS):
        return StoreFailure.SCHEMA_MISSING
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)):
        return StoreFailure.CONNECTION
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return StoreFailure.CONNECTION
    return StoreFailure.QUERY


class ResilientStore:
    """IdentityStore facade with breaker protection and uniform failure policy.

    Usage:
        breaker = CircuitBreaker("database", 5, 60.0, exclude=(IntegrityError,))
        store = ResilientStore(IdentityStore(url), breaker)
        identity = store.get_identity_by_email("a@example.com")  # None on outage
    """

    def __init__(self, store: IdentityStore, breaker: CircuitBreaker) -> None:
        self.raw = store
        self.breaker = breaker

    # ------------------------------------------------------------------
    # Policy helpers
    # ------------------------------------------------------------------

    def _lookup(self, name: str, operation: Callable[..., T], *args: Any, empty: Any = None) -> ReadResult:
        try:
            return ReadResult(self.breaker.call(operation, *args))
        except CircuitOpenError:
            logger.warning("%s skipped: database circuit open", name)
            return ReadResult(empty, StoreFailure.UNAVAILABLE)
        except SQLAlchemyError as exc:
            failure = classify_failure(exc)
            logger.error("%s failed (%s): %s", name, failure.value, exc)
            return ReadResult(empty, failure)

    def _write(self, name: str, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return self.breaker.call(operation, *args, **kwargs)
        except CircuitOpenError:
            logger.warning("%s rejected: database circuit open", name)
            raise
        except IntegrityError as exc:
            logger.info("%s hit a unique constraint: %s", name, exc.orig)
            raise ConflictError(details=str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            failure = classify_failure(exc)
            logger.error("%s failed (%s): %s", name, failure.value, exc)
            raise ServiceUnavailable(details=str(exc), failure=failure) from exc

    def _delete(self, name: str, operation: Callable[..., Any], *args: Any) -> bool:
        try:
            return bool(self.breaker.call(operation, *args))
        except (CircuitOpenError, SQLAlchemyError) as exc:
            logger.warning("%s failed, ignoring: %s", name, exc)
            return False

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> ReadResult:
        result = self._lookup("ping", self.raw.ping)
        return ReadResult(result.ok, result.failure)

    # ------------------------------------------------------------------
    # Reads (lookup_* report the failure, plain variants just the value)
    # ------------------------------------------------------------------

    def lookup_identity(self, identity_id: int) -> ReadResult:
        return self._lookup("get_identity", self.raw.get_identity, identity_id)

    def lookup_identity_by_email(self, email: str) -> ReadResult:
        return self._lookup("get_identity_by_email", self.raw.get_identity_by_email, email)

    def lookup_identity_by_account(self, provider: str, provider_account_id: str) -> ReadResult:
        return self._lookup(
            "get_identity_by_account", self.raw.get_identity_by_account, provider, provider_account_id
        )

    def lookup_accounts(self, identity_id: int) -> ReadResult:
        return self._lookup("list_accounts", self.raw.list_accounts, identity_id, empty=[])

    def get_identity(self, identity_id: int) -> Identity | None:
        return self.lookup_identity(identity_id).value

    def get_identity_by_email(self, email: str) -> Identity | None:
        return self.lookup_identity_by_email(email).value

    def get_identity_by_account(self, provider: str, provider_account_id: str) -> Identity | None:
        return self.lookup_identity_by_account(provider, provider_account_id).value

    def list_accounts(self, identity_id: int) -> list[LinkedAccount]:
        return self.lookup_accounts(identity_id).value

    def get_session_and_identity(self, token: str) -> tuple[Session, Identity] | None:
        return self._lookup("get_session_and_identity", self.raw.get_session_and_identity, token).value

    def get_verification_token(self, token: str) -> VerificationToken | None:
        return self._lookup("get_verification_token", self.raw.get_verification_token, token).value

    def get_reset_token(self, token: str) -> PasswordResetToken | None:
        return self._lookup("get_reset_token", self.raw.get_reset_token, token).value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity) -> Identity:
        return self._write("create_identity", self.raw.create_identity, identity)

    def update_identity(self, identity_id: int, **fields) -> Identity | None:
        return self._write("update_identity", self.raw.update_identity, identity_id, **fields)

    def mark_email_verified(self, identity_id: int) -> bool:
        return self._write("mark_email_verified", self.raw.mark_email_verified, identity_id)

    def link_account(self, account: LinkedAccount) -> LinkedAccount:
        return self._write("link_account", self.raw.link_account, account)

    def create_session(self, session: Session) -> Session:
        return self._write("create_session", self.raw.create_session, session)

    def update_session(self, token: str, expires_at: str) -> bool:
        return self._write("update_session", self.raw.update_session, token, expires_at)

    def create_verification_token(self, token: VerificationToken) -> VerificationToken:
        return self._write("create_verification_token", self.raw.create_verification_token, token)

    def use_verification_token(self, identifier: str, token: str) -> VerificationToken | None:
        return self._write("use_verification_token", self.raw.use_verification_token, identifier, token)

    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        return self._write("create_reset_token", self.raw.create_reset_token, token)

    def complete_password_reset(self, token: str, password_digest: str) -> bool:
        return self._write("complete_password_reset", self.raw.complete_password_reset, token, password_digest)

    # ------------------------------------------------------------------
    # Deletes (best effort)
    # ------------------------------------------------------------------

    def delete_session(self, token: str) -> bool:
        return self._delete("delete_session", self.raw.delete_session, token)

    def delete_verification_token(self, token: str) -> bool:
        return self._delete("delete_verification_token", self.raw.delete_verification_token, token)

    def delete_verification_tokens_for(self, identifier: str) -> bool:
        return self._delete("delete_verification_tokens_for", self.raw.delete_verification_tokens_for, identifier)

    def delete_reset_token(self, token: str) -> bool:
        return self._delete("delete_reset_token", self.raw.delete_reset_token, token)

    def purge_expired(self) -> bool:
        return self._delete("purge_expired", self.raw.purge_expired)
