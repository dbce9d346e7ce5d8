"""
auth/tokens.py -- Password digests, session tokens and one-time tokens.

Security design decisions:
  Passwords: bcrypt used directly (cost 12). The _DUMMY_HASH constant enables
       timing equalization in authenticate_identity() so response time does
       not reveal whether an email is registered [C1].

  Session token: python-jose with HS256, signed with SECRET_KEY. The token is
       the session -- gating never reads the database. Each token carries a
       `sid` that keys the server-side session ledger row. decode_session()
       returns None on any failure; callers treat that as "no session".

  One-time tokens (email verification, magic link, password reset):
       secrets.token_hex(32) gives 256 bits of entropy. They are stored as-is
       because they are short-lived and single-use.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup [M6].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Identity
    from auth.resilient import ResilientStore

logger = logging.getLogger("portcullis.auth.tokens")

_settings = get_settings()

_ALGORITHM = "HS256"
_BCRYPT_ROUNDS = 12

SESSION_COOKIE = "session_token"
VERIFICATION_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_TTL = timedelta(hours=1)

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def _password_bytes(plain: str) -> bytes:
    # bcrypt only looks at the first 72 bytes; newer releases raise instead of
    # truncating, so truncate explicitly.
    return plain.encode("utf-8")[:72]


def hash_password(plain: str) -> str:
    """Return a bcrypt digest of the given plaintext password."""
    return bcrypt.hashpw(_password_bytes(plain), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt digest."""
    try:
        return bcrypt.checkpw(_password_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed digest in the database.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than later ones.
_DUMMY_HASH: str = hash_password("portcullis_timing_dummy")


def authenticate_identity(store: ResilientStore, email: str, password: str) -> Identity | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the identity exists or has a password:
    - Unknown email / OAuth-only identity: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real digest

    Returns the Identity on success, None on any failure (including a
    database outage -- the lookup is a read and reads never raise).
    """
    identity = store.get_identity_by_email(email)
    if identity is None or identity.password_digest is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, identity.password_digest):
        return None
    return identity


# ---------------------------------------------------------------------------
# Session token (JWT) encode / decode
# ---------------------------------------------------------------------------


def encode_session(claims: dict, issued_at: int | None = None, max_age: int | None = None) -> str:
    """Sign a session token. Sets iat (now, unless given) and exp = iat + max_age."""
    iat = int(time.time()) if issued_at is None else issued_at
    payload = dict(claims)
    payload["iat"] = iat
    payload["exp"] = iat + (max_age or _settings.session_max_age)
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session(token: str) -> dict | None:
    """Verify a session token. Returns the claims or None on any failure."""
    try:
        claims = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "sub" not in claims or "sid" not in claims:
        return None
    return claims


def new_session_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# One-time tokens and expiry
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Opaque one-time token: 32 random bytes as 64 hex characters."""
    return secrets.token_hex(32)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def expires_in(delta: timedelta) -> str:
    return (datetime.now(timezone.utc) + delta).isoformat()


def is_expired(expires_at: str, now: datetime | None = None) -> bool:
    current = now or datetime.now(timezone.utc)
    return datetime.fromisoformat(expires_at) < current


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token expiry so both expire together.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.session_max_age,
        path="/",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/", samesite="lax", secure=_settings.secure_cookies, httponly=True)


def read_session_token(request) -> str | None:
    """Session token from the cookie, or from an Authorization: Bearer header."""
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None
