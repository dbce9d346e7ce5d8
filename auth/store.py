"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
IdentityStore is the repository; the _row_to_* functions are the mappers.
Nothing outside this module touches SQL.

This layer is deliberately "raw": every method raises SQLAlchemy exceptions
unchanged. Classification, circuit breaking and the read/write/delete failure
policies live one layer up in auth/resilient.py.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are lowercased on the way in, so the UNIQUE index on
  identities.email is effectively case-insensitive.

Schema:
  create_schema=True (the default) creates any missing tables on start-up.
  Deployments that manage the schema externally pass False; queries against
  a missing table then fail with "no such table", which the resilient layer
  classifies as SCHEMA_MISSING.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import Identity, LinkedAccount, PasswordResetToken, Session, VerificationToken

logger = logging.getLogger("portcullis.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # always lowercase
    Column("name", String(100)),
    Column("image", Text),
    Column("password_digest", Text),  # NULL for OAuth / magic-link only identities
    Column("email_verified_at", String(32)),
    Column("onboarding_completed", Integer, nullable=False, server_default="0"),
    Column("bio", Text),
    Column("occupation", String(100)),
    Column("company", String(100)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, ForeignKey("identities.id", ondelete="CASCADE"), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_accounts_provider_account"),
    UniqueConstraint("identity_id", "provider", name="uq_accounts_identity_provider"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("token", String(64), primary_key=True),
    Column("identity_id", Integer, ForeignKey("identities.id", ondelete="CASCADE"), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("token", String(64), primary_key=True),
    Column("identifier", String(320), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
)

_password_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("identity_id", Integer, ForeignKey("identities.id", ondelete="CASCADE"), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_IDENTITY_FIELDS = frozenset(
    {"name", "image", "password_digest", "email_verified_at", "onboarding_completed", "bio", "occupation", "company"}
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for identities, linked accounts, sessions and one-time tokens.

    Usage:
        store = IdentityStore("sqlite:///portcullis.db")
        identity = store.create_identity(Identity(email="a@example.com"))
        store.link_account(LinkedAccount(identity.id, "github", "12345"))
        store.close()
    """

    def __init__(self, db_url: str, create_schema: bool = True) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        if create_schema:
            _metadata.create_all(self.engine)

    def ping(self) -> None:
        """Round-trip a trivial query. Raises on any connectivity problem."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def get_identity(self, identity_id: int) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_identity_by_email(self, email: str) -> Identity | None:
        """Case-insensitive lookup (emails are stored lowercase)."""
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.email == email.strip().lower())).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_identity_by_account(self, provider: str, provider_account_id: str) -> Identity | None:
        stmt = (
            select(_identities)
            .join(_accounts, _accounts.c.identity_id == _identities.c.id)
            .where((_accounts.c.provider == provider) & (_accounts.c.provider_account_id == provider_account_id))
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_identity(row) if row is not None else None

    def create_identity(self, identity: Identity) -> Identity:
        """Insert a new identity and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.insert().values(
                    email=identity.email.strip().lower(),
                    name=identity.name,
                    image=identity.image,
                    password_digest=identity.password_digest,
                    email_verified_at=identity.email_verified_at,
                    onboarding_completed=1 if identity.onboarding_completed else 0,
                    bio=identity.bio,
                    occupation=identity.occupation,
                    company=identity.company,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            new_id = result.inserted_primary_key[0]
        return self.get_identity(new_id)

    def update_identity(self, identity_id: int, **fields) -> Identity | None:
        """Update mutable fields and return the fresh row (None if the id is unknown).

        Accepted fields: name, image, password_digest, email_verified_at,
        onboarding_completed, bio, occupation, company.
        """
        unknown = set(fields) - _IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")
        if "onboarding_completed" in fields:
            fields["onboarding_completed"] = 1 if fields["onboarding_completed"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update().where(_identities.c.id == identity_id).values(updated_at=_now_iso(), **fields)
            )
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get_identity(identity_id)

    def mark_email_verified(self, identity_id: int) -> bool:
        """Stamp email_verified_at only if it is still NULL.

        Idempotent: returns True when this call did the stamping, False when
        the identity was already verified (or does not exist).
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where((_identities.c.id == identity_id) & (_identities.c.email_verified_at.is_(None)))
                .values(email_verified_at=now, updated_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Linked accounts
    # ------------------------------------------------------------------

    def list_accounts(self, identity_id: int) -> list[LinkedAccount]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _accounts.select().where(_accounts.c.identity_id == identity_id).order_by(_accounts.c.id)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    def link_account(self, account: LinkedAccount) -> LinkedAccount:
        """Insert a linked account.

        Raises sqlalchemy.exc.IntegrityError when the provider account is
        already linked anywhere, or the identity already has this provider.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    identity_id=account.identity_id,
                    provider=account.provider,
                    provider_account_id=account.provider_account_id,
                    created_at=now,
                )
            )
            conn.commit()
        return LinkedAccount(
            id=result.inserted_primary_key[0],
            identity_id=account.identity_id,
            provider=account.provider,
            provider_account_id=account.provider_account_id,
            created_at=now,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    token=session.token, identity_id=session.identity_id, expires_at=session.expires_at
                )
            )
            conn.commit()
        return session

    def get_session_and_identity(self, token: str) -> tuple[Session, Identity] | None:
        stmt = (
            select(_sessions.c.token, _sessions.c.identity_id, _sessions.c.expires_at, _identities)
            .join(_identities, _identities.c.id == _sessions.c.identity_id)
            .where(_sessions.c.token == token)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        if row is None:
            return None
        session = Session(token=row.token, identity_id=row.identity_id, expires_at=row.expires_at)
        return session, _row_to_identity(row)

    def update_session(self, token: str, expires_at: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(_sessions.c.token == token).values(expires_at=expires_at))
            conn.commit()
        return result.rowcount > 0

    def delete_session(self, token: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.token == token))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Verification tokens (email verification + magic link)
    # ------------------------------------------------------------------

    def create_verification_token(self, token: VerificationToken) -> VerificationToken:
        with self.engine.connect() as conn:
            conn.execute(
                _verification_tokens.insert().values(
                    token=token.token, identifier=token.identifier.lower(), expires_at=token.expires_at
                )
            )
            conn.commit()
        return token

    def get_verification_token(self, token: str) -> VerificationToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_verification_tokens.select().where(_verification_tokens.c.token == token)).fetchone()
        return _row_to_verification_token(row) if row is not None else None

    def use_verification_token(self, identifier: str, token: str) -> VerificationToken | None:
        """Consume a token: return it and delete it in one transaction.

        Returns None when no token matches (identifier, token). Two concurrent
        consumers cannot both succeed -- only one DELETE affects the row.
        """
        where = (_verification_tokens.c.token == token) & (_verification_tokens.c.identifier == identifier.lower())
        with self.engine.begin() as conn:
            row = conn.execute(_verification_tokens.select().where(where)).fetchone()
            if row is None:
                return None
            deleted = conn.execute(_verification_tokens.delete().where(where)).rowcount
        return _row_to_verification_token(row) if deleted else None

    def delete_verification_token(self, token: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_verification_tokens.delete().where(_verification_tokens.c.token == token))
            conn.commit()
        return result.rowcount > 0

    def delete_verification_tokens_for(self, identifier: str) -> int:
        """Remove every outstanding token for an email. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _verification_tokens.delete().where(_verification_tokens.c.identifier == identifier.lower())
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_reset_tokens.insert().values(
                    token=token.token,
                    identity_id=token.identity_id,
                    expires_at=token.expires_at,
                    used=0,
                    created_at=now,
                )
            )
            conn.commit()
        token.id = result.inserted_primary_key[0]
        token.created_at = now
        return token

    def get_reset_token(self, token: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_reset_tokens.select().where(_password_reset_tokens.c.token == token)
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def delete_reset_token(self, token: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_password_reset_tokens.delete().where(_password_reset_tokens.c.token == token))
            conn.commit()
        return result.rowcount > 0

    def complete_password_reset(self, token: str, password_digest: str) -> bool:
        """Consume a reset token and set the new password in one transaction.

        The token is flipped to used only if it is still unused; the loser of
        a concurrent replay gets False and nothing is written. The password
        update also re-stamps email_verified_at: receiving the reset link
        proves ownership of the address.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            claimed = conn.execute(
                _password_reset_tokens.update()
                .where((_password_reset_tokens.c.token == token) & (_password_reset_tokens.c.used == 0))
                .values(used=1)
            )
            if claimed.rowcount == 0:
                return False
            identity_id = conn.execute(
                select(_password_reset_tokens.c.identity_id).where(_password_reset_tokens.c.token == token)
            ).scalar_one()
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(password_digest=password_digest, email_verified_at=now, updated_at=now)
            )
        return True

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self, now_iso: str | None = None) -> int:
        """Delete expired sessions and one-time tokens. Returns rows removed.

        ISO 8601 UTC strings sort lexicographically, so string comparison is
        a correct time comparison here.
        """
        now = now_iso or _now_iso()
        with self.engine.begin() as conn:
            removed = conn.execute(_sessions.delete().where(_sessions.c.expires_at < now)).rowcount
            removed += conn.execute(
                _verification_tokens.delete().where(_verification_tokens.c.expires_at < now)
            ).rowcount
            removed += conn.execute(
                _password_reset_tokens.delete().where(_password_reset_tokens.c.expires_at < now)
            ).rowcount
        if removed:
            logger.info("Purged %d expired session/token rows", removed)
        return removed

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        name=row.name,
        image=row.image,
        password_digest=row.password_digest,
        email_verified_at=row.email_verified_at,
        onboarding_completed=bool(row.onboarding_completed),
        bio=row.bio,
        occupation=row.occupation,
        company=row.company,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_account(row) -> LinkedAccount:
    return LinkedAccount(
        id=row.id,
        identity_id=row.identity_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        created_at=row.created_at,
    )


def _row_to_verification_token(row) -> VerificationToken:
    return VerificationToken(token=row.token, identifier=row.identifier, expires_at=row.expires_at)


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        token=row.token,
        identity_id=row.identity_id,
        expires_at=row.expires_at,
        used=bool(row.used),
        created_at=row.created_at,
    )
