"""
auth/validators.py -- Input rules shared by the transport models and flows.

Each validator returns the normalised value or raises ValueError with a
user-facing message. Pydantic field validators in api/models.py call these,
so a ValueError surfaces as a 400 VALIDATION_ERROR before any flow runs.
"""

from __future__ import annotations

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50

# Common provider typos -> intended domain.
_DOMAIN_TYPOS = {
    "gmai.com": "gmail.com",
    "gmail.co": "gmail.com",
    "yaho.com": "yahoo.com",
    "yahoo.co": "yahoo.com",
    "hotmai.com": "hotmail.com",
    "hotmail.co": "hotmail.com",
    "outlok.com": "outlook.com",
    "outlook.co": "outlook.com",
}


def normalize_email(email: str) -> str:
    return email.strip().lower()


def require_email(email: str | None) -> str:
    """Normalise before format validation. Format itself is checked by pydantic's EmailStr."""
    value = normalize_email(email or "")
    if not value:
        raise ValueError("Email is required")
    return value


def check_email_typo(email: str) -> str:
    """Reject addresses whose domain is a well-known typo, suggesting the fix."""
    local, _, domain = email.partition("@")
    if domain in _DOMAIN_TYPOS:
        raise ValueError(f"Did you mean {local}@{_DOMAIN_TYPOS[domain]}?")
    return email


def validate_password(password: str) -> str:
    if not password:
        raise ValueError("Password is required")
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(password) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"Password must be less than {PASSWORD_MAX_LENGTH} characters")
    return password


def validate_name(name: str | None) -> str | None:
    """Trim an optional display name. Blank means "not provided"."""
    if name is None:
        return None
    trimmed = name.strip()
    if not trimmed:
        return None
    if not NAME_MIN_LENGTH <= len(trimmed) <= NAME_MAX_LENGTH:
        raise ValueError(f"Name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters")
    return trimmed
