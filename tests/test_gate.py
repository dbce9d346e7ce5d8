"""
tests/test_gate.py -- Route gate decision table.

Covers each row of the table, first-match ordering, and the property that
for every (path, claims) pair exactly one row's condition holds.
"""

from __future__ import annotations

import itertools

import pytest

from auth.gate import DEFAULT_ROUTES, GateAction, GateRoutes, evaluate, matching_rules

VERIFIED = "2025-01-01T00:00:00+00:00"


def _claims(verified: bool, onboarded: bool) -> dict:
    return {"sub": "1", "email_verified": VERIFIED if verified else None, "onboarding_completed": onboarded}


class TestRows:
    def test_auth_api_always_passes(self):
        for claims in (None, _claims(False, False)):
            decision = evaluate("/api/auth/session", claims)
            assert decision.action is GateAction.PASS
            assert decision.rule == 1

    def test_verified_user_leaves_auth_pages(self):
        decision = evaluate("/auth/signin", _claims(True, True))
        assert (decision.action, decision.location, decision.rule) == (GateAction.REDIRECT, "/", 2)

    def test_unverified_user_sent_to_verify_request(self):
        decision = evaluate("/dashboard", _claims(False, False))
        assert (decision.action, decision.location, decision.rule) == (
            GateAction.REDIRECT,
            "/auth/verify-request",
            3,
        )

    def test_unverified_user_may_stay_on_verification_pages(self):
        for path in ("/auth/verify-request", "/auth/verify-email"):
            assert evaluate(path, _claims(False, False)).action is GateAction.PASS

    def test_unverified_user_on_signin_is_sent_to_verify_request(self):
        assert evaluate("/auth/signin", _claims(False, False)).location == "/auth/verify-request"

    def test_not_onboarded_user_sent_to_onboarding(self):
        decision = evaluate("/settings/billing", _claims(True, False))
        assert (decision.location, decision.rule) == ("/onboarding", 4)

    def test_onboarded_user_leaves_onboarding(self):
        decision = evaluate("/onboarding", _claims(True, True))
        assert (decision.location, decision.rule) == ("/", 5)

    def test_protected_without_session_rejected(self):
        decision = evaluate("/profile", None)
        assert (decision.action, decision.rule) == (GateAction.REJECT, 6)

    def test_everything_else_passes(self):
        assert evaluate("/", None).rule == 7
        assert evaluate("/pricing", _claims(True, True)).rule == 7
        assert evaluate("/onboarding", _claims(True, False)).rule == 7

    def test_prefix_match_is_segment_aware(self):
        assert evaluate("/dashboards-public", None).action is GateAction.PASS

    def test_routes_are_configurable(self):
        routes = GateRoutes(protected=("/admin",))
        assert evaluate("/admin", None, routes).action is GateAction.REJECT
        assert evaluate("/dashboard", None, routes).action is GateAction.PASS


class TestExcluded:
    @pytest.mark.parametrize(
        "path", ["/static/app.css", "/favicon.ico", "/api/health", "/api/health/ready", "/docs", "/docs/oauth2"]
    )
    def test_excluded(self, path):
        assert DEFAULT_ROUTES.is_excluded(path)

    @pytest.mark.parametrize("path", ["/docsanything", "/api/healthz", "/static", "/openapi.json.bak"])
    def test_lookalikes_are_not_excluded(self, path):
        assert not DEFAULT_ROUTES.is_excluded(path)


PATHS = [
    "/",
    "/api/auth/session",
    "/api/user/onboarding",
    "/auth/signin",
    "/auth/signup",
    "/auth/verify-request",
    "/auth/verify-email",
    "/dashboard",
    "/profile/edit",
    "/settings",
    "/onboarding",
    "/about",
]
CLAIMS = [None] + [_claims(v, o) for v, o in itertools.product((False, True), repeat=2)]


@pytest.mark.parametrize("path, claims", list(itertools.product(PATHS, CLAIMS)))
def test_exactly_one_row_matches(path, claims):
    rules = matching_rules(path, claims, DEFAULT_ROUTES)
    assert len(rules) == 1
    assert rules[0] == evaluate(path, claims, DEFAULT_ROUTES).rule
