"""
auth/gate.py -- Route gating decided from the session claims alone.

evaluate() is a pure function of (path, claims, routes): no I/O, no clock.
The api/ middleware decodes the token, calls evaluate() and turns the
decision into a response.

Decision table (first match wins):
  1. path under the auth API prefix                           pass
  2. claims, auth UI route, verified                          redirect home
  3. claims, unverified, not a verification route             redirect verify-request
  4. claims, verified, not onboarded, protected path          redirect onboarding
  5. claims, onboarded, onboarding path                       redirect home
  6. protected path, no claims                                reject
  7. anything else                                            pass
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class GateAction(str, Enum):
    PASS = "pass"
    REDIRECT = "redirect"
    REJECT = "reject"


@dataclass(frozen=True)
class GateDecision:
    action: GateAction
    location: str | None = None
    rule: int = 7


@dataclass(frozen=True)
class GateRoutes:
    """Route sets the gate consults. Configuration, not logic."""

    auth_api_prefix: str = "/api/auth"
    home: str = "/"
    onboarding: str = "/onboarding"
    verify_request: str = "/auth/verify-request"
    auth_pages: frozenset[str] = frozenset(
        {"/auth/signin", "/auth/signup", "/auth/verify-request", "/auth/verify-email"}
    )
    verification_pages: frozenset[str] = frozenset({"/auth/verify-request", "/auth/verify-email"})
    protected: tuple[str, ...] = ("/dashboard", "/profile", "/settings")
    excluded: tuple[str, ...] = ("/static/", "/favicon.ico", "/api/health", "/openapi.json", "/docs")

    def is_protected(self, path: str) -> bool:
        return any(path == prefix or path.startswith(prefix + "/") for prefix in self.protected)

    def is_excluded(self, path: str) -> bool:
        """Prefixes ending in "/" cover everything under them; others match whole segments."""
        for prefix in self.excluded:
            if prefix.endswith("/"):
                if path.startswith(prefix):
                    return True
            elif path == prefix or path.startswith(prefix + "/"):
                return True
        return False

    def is_auth_api(self, path: str) -> bool:
        return path == self.auth_api_prefix or path.startswith(self.auth_api_prefix + "/")


DEFAULT_ROUTES = GateRoutes()


def evaluate(path: str, claims: dict | None, routes: GateRoutes = DEFAULT_ROUTES) -> GateDecision:
    """Decide what happens to a request for `path` carrying `claims` (None = no session)."""
    if routes.is_auth_api(path):
        return GateDecision(GateAction.PASS, rule=1)

    if claims is not None:
        verified = bool(claims.get("email_verified"))
        onboarded = bool(claims.get("onboarding_completed"))
        if verified and path in routes.auth_pages:
            return GateDecision(GateAction.REDIRECT, routes.home, rule=2)
        if not verified and path not in routes.verification_pages:
            return GateDecision(GateAction.REDIRECT, routes.verify_request, rule=3)
        if verified and not onboarded and routes.is_protected(path):
            return GateDecision(GateAction.REDIRECT, routes.onboarding, rule=4)
        if onboarded and path == routes.onboarding:
            return GateDecision(GateAction.REDIRECT, routes.home, rule=5)
    elif routes.is_protected(path):
        return GateDecision(GateAction.REJECT, rule=6)

    return GateDecision(GateAction.PASS, rule=7)


def matching_rules(path: str, claims: dict | None, routes: GateRoutes = DEFAULT_ROUTES) -> list[int]:
    """Every table row whose condition holds, ignoring order.

    Row 5 is only reachable for verified sessions (row 3 catches the rest), so
    its condition includes `verified`; with that, the rows are disjoint.
    """
    rules = []
    has = claims is not None
    verified = has and bool(claims.get("email_verified"))
    onboarded = has and bool(claims.get("onboarding_completed"))
    auth_api = routes.is_auth_api(path)
    if auth_api:
        rules.append(1)
    if has and path in routes.auth_pages and verified:
        rules.append(2)
    if has and not verified and path not in routes.verification_pages and not auth_api:
        rules.append(3)
    if has and verified and not onboarded and routes.is_protected(path):
        rules.append(4)
    if has and verified and onboarded and path == routes.onboarding:
        rules.append(5)
    if not has and routes.is_protected(path):
        rules.append(6)
    return rules or [7]
