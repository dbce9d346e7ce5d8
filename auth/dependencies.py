"""
auth/dependencies.py -- FastAPI Depends() helpers for sessions and services.

The session middleware in api/main.py decodes the token once per request and
stores the claims on request.state.session. These helpers read that value and
fall back to decoding the cookie / Bearer header themselves for requests the
middleware skipped (excluded paths, or apps assembled without it).

try_get_session() is the soft variant (returns None when unauthenticated).
require_session() wraps it and raises AuthenticationError (401).

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi because this module is part
  of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.flows import CredentialFlows
from auth.session import SessionTokenBuilder
from auth.tokens import decode_session, read_session_token
from core.errors import AuthenticationError


def try_get_session(request: Request) -> dict | None:
    """Return the session claims for this request, or None. Never raises."""
    claims = getattr(request.state, "session", None)
    if claims is not None:
        return claims
    token = read_session_token(request)
    return decode_session(token) if token else None


def require_session(request: Request) -> dict:
    """Require a valid session token.

    Use as a FastAPI dependency:
        @router.post("/onboarding")
        def route(claims: dict = Depends(require_session)): ...
    """
    claims = try_get_session(request)
    if claims is None:
        raise AuthenticationError("Authentication required")
    return claims


def get_flows(request: Request) -> CredentialFlows:
    return request.app.state.flows


def get_token_builder(request: Request) -> SessionTokenBuilder:
    return request.app.state.token_builder
