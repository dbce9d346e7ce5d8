"""
api/routes/oauth.py -- OAuth authorization-code sign-in (GitHub, Google).

Routes:
  GET /api/auth/signin/{provider}    -- redirect the browser to the provider
  GET /api/auth/callback/{provider}  -- exchange the code, run the sign-in
                                        pipeline, set the session cookie

Register this router AFTER api/routes/auth.py: /callback/{provider} would
otherwise swallow GET /callback/email.

authlib keeps the OAuth `state` value in the Starlette session between the
two requests (CSRF protection), so SessionMiddleware must be installed. The
post-sign-in target (?callbackUrl=) rides along in the same session.
"""

import logging

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from auth import signals
from auth.flows import CredentialFlows
from auth.models import OAUTH_PROVIDERS
from auth.oauth import fetch_sign_in_attempt, get_enabled_providers
from auth.signals import SignInError
from auth.tokens import set_session_cookie
from core.config import get_settings

logger = logging.getLogger("portcullis.api.oauth")

router = APIRouter(prefix="/api/auth")

_CALLBACK_KEY = "oauth_callback_url"


def _enabled(provider: str) -> bool:
    """Only configured OAuth providers may start or finish a flow."""
    if provider not in OAUTH_PROVIDERS:
        return False
    return provider in {p["id"] for p in get_enabled_providers(get_settings())}


@router.get("/signin/{provider}")
async def oauth_redirect(request: Request, provider: str, callbackUrl: str | None = None):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list before anything
    else, so a spoofed name can never pick the redirect target.
    """
    if not _enabled(provider):
        return RedirectResponse(signals.error_url(SignInError.OAUTH_SIGNIN), status_code=302)

    request.session[_CALLBACK_KEY] = signals.safe_next(callbackUrl)  # [C2]
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    try:
        return await client.authorize_redirect(request, redirect_uri)
    except (OAuthError, httpx.HTTPError):
        logger.exception("Could not build the authorization URL for provider %r", provider)
        return RedirectResponse(signals.error_url(SignInError.OAUTH_SIGNIN), status_code=302)


@router.get("/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str, background_tasks: BackgroundTasks):
    """Handle the provider callback and issue a session cookie.

    Flow:
      1. Exchange the authorization code (authlib checks `state`).
      2. Build the SignInAttempt; unverified provider emails are refused [H1].
      3. Run the sign-in pipeline in the thread pool (it does blocking I/O).
      4. Set the cookie and redirect to the stored callbackUrl.
    """
    if not _enabled(provider):
        return RedirectResponse(signals.error_url(SignInError.OAUTH_SIGNIN), status_code=302)

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return RedirectResponse(signals.error_url(SignInError.OAUTH_CALLBACK), status_code=302)

    try:
        attempt = await fetch_sign_in_attempt(client, provider, token)
    except ValueError:
        logger.warning("OAuth sign-in rejected: unverified or missing email from %r", provider)
        return RedirectResponse(signals.error_url(SignInError.OAUTH_CALLBACK), status_code=302)
    except httpx.HTTPError:
        logger.exception("OAuth profile fetch failed for provider %r", provider)
        return RedirectResponse(signals.error_url(SignInError.OAUTH_CALLBACK), status_code=302)

    flows: CredentialFlows = request.app.state.flows
    result = await run_in_threadpool(flows.sign_in, attempt, background_tasks.add_task)
    if not result.ok:
        return RedirectResponse(result.redirect, status_code=302)

    next_url = signals.safe_next(request.session.pop(_CALLBACK_KEY, None))  # [C2]
    resp = RedirectResponse(next_url, status_code=302)
    set_session_cookie(resp, result.token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
