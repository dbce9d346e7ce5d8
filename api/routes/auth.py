"""
api/routes/auth.py -- Credential, email and session endpoints under /api/auth.

Routes:
  POST /api/auth/signup                -- create a credentials identity
  POST /api/auth/forgot-password       -- request a password reset email
  POST /api/auth/reset-password        -- complete a password reset
  POST /api/auth/resend-verification   -- new verification email (session or password)
  POST /api/auth/trigger-verification  -- new verification email (password required)
  GET  /api/auth/verify-email          -- consume a verification link; 302
  POST /api/auth/signin/email          -- request a magic sign-in link
  GET  /api/auth/callback/email        -- consume a magic link; 302 with cookie
  POST /api/auth/callback/credentials  -- password sign-in; sets the session cookie
  GET  /api/auth/session               -- current session claims ({} when signed out)
  POST /api/auth/session/refresh       -- re-read identity flags and re-sign
  POST /api/auth/signout               -- revoke the ledger row, clear the cookie
  GET  /api/auth/providers             -- enabled sign-in providers
  GET  /api/auth/error                 -- describe a ?error= redirect signal

The OAuth redirect/callback pair lives in api/routes/oauth.py and is
registered AFTER this router so /callback/email and /callback/credentials
win over /callback/{provider}.

Security:
  [H2] POST /callback/credentials is rate-limited by slowapi per IP.
  [C1] credentials_sign_in() goes through authenticate_identity() (timing
       equalisation). Do not inline a lookup + verify.
  [C2] every callbackUrl goes through signals.safe_next().
  [M5] Cache-Control: no-store on every response that sets a session cookie.
  Flow rate limits (signup, reset, ...) are keyed by IP or email and come
  back as X-RateLimit-* headers.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.util import get_remote_address

from api.limiter import limiter
from api.models import (
    CredentialsRequest,
    EmailRequest,
    MessageResponse,
    ProviderOut,
    ResendVerificationRequest,
    ResetPasswordRequest,
    SessionResponse,
    SessionUser,
    SignalResponse,
    SignInResponse,
    SignupRequest,
    SignupResponse,
    UserOut,
)
from auth import signals
from auth.dependencies import get_flows, get_token_builder, require_session, try_get_session
from auth.flows import CredentialFlows
from auth.oauth import get_enabled_providers
from auth.session import SessionTokenBuilder
from auth.signals import SignInError
from auth.tokens import clear_session_cookie, set_session_cookie
from core.config import get_settings

router = APIRouter(prefix="/api/auth")


def _no_store(response):
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


def _session_body(claims: dict) -> dict:
    expires = datetime.fromtimestamp(claims["exp"], tz=timezone.utc).isoformat()
    return SessionResponse(
        user=SessionUser.from_claims(claims),
        provider=claims.get("provider"),
        expires=expires,
    ).model_dump()


# ---------------------------------------------------------------------------
# Signup and password reset
# ---------------------------------------------------------------------------


@router.post("/signup", response_model=SignupResponse)
def signup(request: Request, body: SignupRequest, flows: CredentialFlows = Depends(get_flows)) -> JSONResponse:
    """Create an unverified identity with a credentials account and mail a verification link."""
    status = flows.enforce_rate_limit("signup", get_remote_address(request))
    result = flows.signup(body.email, body.password, body.name, body.profilePictureUrl)
    content = SignupResponse(
        user=UserOut.from_identity(result.identity),
        verificationEmailSent=result.verification_email_sent,
    ).model_dump()
    return JSONResponse(content=content, headers=status.headers())


@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(body: EmailRequest, flows: CredentialFlows = Depends(get_flows)) -> JSONResponse:
    """Same answer whether or not the email is registered."""
    status = flows.enforce_rate_limit("forgot-password", body.email)
    message = flows.forgot_password(body.email)
    return JSONResponse(content=MessageResponse(message=message).model_dump(), headers=status.headers())


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(
    request: Request, body: ResetPasswordRequest, flows: CredentialFlows = Depends(get_flows)
) -> JSONResponse:
    status = flows.enforce_rate_limit("reset-password", get_remote_address(request))
    message = flows.reset_password(body.token, body.password)
    return JSONResponse(content=MessageResponse(message=message).model_dump(), headers=status.headers())


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/resend-verification", response_model=MessageResponse)
def resend_verification(
    request: Request, body: ResendVerificationRequest, flows: CredentialFlows = Depends(get_flows)
) -> JSONResponse:
    """Resend for a signed-in caller, or for anyone who re-proves the password.

    A session only counts when it belongs to the email in the body; otherwise
    the password path applies.
    """
    status = flows.enforce_rate_limit("resend-verification", body.email)
    claims = try_get_session(request)
    if claims is not None and claims.get("email", "").lower() != body.email:
        claims = None
    message = flows.resend_verification(body.email, password=body.password, claims=claims)
    return JSONResponse(content=MessageResponse(message=message).model_dump(), headers=status.headers())


@router.post("/trigger-verification", response_model=MessageResponse)
def trigger_verification(body: CredentialsRequest, flows: CredentialFlows = Depends(get_flows)) -> JSONResponse:
    status = flows.enforce_rate_limit("resend-verification", body.email)
    message = flows.resend_verification(body.email, password=body.password)
    return JSONResponse(content=MessageResponse(message=message).model_dump(), headers=status.headers())


@router.get("/verify-email")
def verify_email(
    request: Request,
    token: str | None = None,
    email: str | None = None,
    flows: CredentialFlows = Depends(get_flows),
    builder: SessionTokenBuilder = Depends(get_token_builder),
) -> RedirectResponse:
    """Consume a verification link and redirect to the sign-in or verify-request page.

    When the caller is already signed in as the verified identity, the session
    cookie is re-issued so the gate stops sending them to /auth/verify-request.
    """
    location, identity = flows.verify_email(token, email)
    resp = RedirectResponse(location, status_code=302)
    claims = try_get_session(request)
    if identity is not None and claims is not None and claims.get("user_id") == identity.id:
        session_token, _ = builder.reissue(claims)
        set_session_cookie(resp, session_token)
        _no_store(resp)
    return resp


# ---------------------------------------------------------------------------
# Magic link and credentials sign-in
# ---------------------------------------------------------------------------


@router.post("/signin/email", response_model=MessageResponse)
def request_magic_link(body: EmailRequest, flows: CredentialFlows = Depends(get_flows)) -> JSONResponse:
    status = flows.enforce_rate_limit("magic-link", body.email)
    callback_url = signals.safe_next(body.callbackUrl) if body.callbackUrl else None  # [C2]
    message = flows.request_magic_link(body.email, callback_url)
    return JSONResponse(content=MessageResponse(message=message).model_dump(), headers=status.headers())


@router.get("/callback/email")
def magic_link_callback(
    token: str | None = None,
    email: str | None = None,
    callbackUrl: str | None = None,
    flows: CredentialFlows = Depends(get_flows),
) -> RedirectResponse:
    if not token or not email:
        return RedirectResponse(signals.error_url(SignInError.VERIFICATION), status_code=302)
    result = flows.magic_link_callback(token, email.strip().lower())
    if not result.ok:
        return RedirectResponse(result.redirect, status_code=302)
    resp = RedirectResponse(signals.safe_next(callbackUrl), status_code=302)  # [C2]
    set_session_cookie(resp, result.token)
    return _no_store(resp)


@limiter.limit(get_settings().login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/callback/credentials", response_model=SignInResponse)
def credentials_sign_in(
    request: Request, body: CredentialsRequest, flows: CredentialFlows = Depends(get_flows)
) -> JSONResponse:
    """Password sign-in; sets the session cookie.

    Wrong email and wrong password produce the same 401 body. A refused
    sign-in (account-linking policy, database outage) answers 403 carrying
    the redirect-signal URL the browser should follow.
    """
    result = flows.credentials_sign_in(body.email, body.password)
    if not result.ok:
        error = signals.code_from_url(result.redirect)
        bad_credentials = error is SignInError.CREDENTIALS_SIGNIN
        resp = JSONResponse(
            status_code=401 if bad_credentials else 403,
            content={
                "success": False,
                "error": "Invalid email or password" if bad_credentials else signals.describe(error.value)["message"],
                "code": error.value,
                "url": result.redirect,
            },
        )
        return _no_store(resp)

    resp = JSONResponse(content=SignInResponse(user=UserOut.from_identity(result.identity)).model_dump())
    set_session_cookie(resp, result.token)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/session")
def get_session(request: Request) -> JSONResponse:
    """Session derived from the token alone. Signed-out callers get {}."""
    claims = try_get_session(request)
    if claims is None:
        return _no_store(JSONResponse(content={}))
    return _no_store(JSONResponse(content=_session_body(claims)))


@router.post("/session/refresh", response_model=SessionResponse)
def refresh_session(
    claims: dict = Depends(require_session),
    builder: SessionTokenBuilder = Depends(get_token_builder),
) -> JSONResponse:
    token, fresh = builder.reissue(claims)
    resp = JSONResponse(content=_session_body(fresh))
    set_session_cookie(resp, token)
    return _no_store(resp)


@router.post("/signout")
def signout(request: Request, builder: SessionTokenBuilder = Depends(get_token_builder)) -> JSONResponse:
    claims = try_get_session(request)
    if claims is not None:
        builder.revoke(claims)
    resp = JSONResponse(content={"success": True, "url": signals.SIGNIN_PAGE})
    clear_session_cookie(resp)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Providers and redirect signals
# ---------------------------------------------------------------------------


@router.get("/providers", response_model=list[ProviderOut])
def list_providers() -> list[ProviderOut]:
    return [
        ProviderOut(signinUrl=f"{router.prefix}/signin/{p['id']}", **p)
        for p in get_enabled_providers(get_settings())
    ]


@router.get("/error", response_model=SignalResponse)
def describe_error(error: str | None = None) -> SignalResponse:
    """Title and message for a ?error= code. Unknown codes describe as Default."""
    return SignalResponse(**signals.describe(error))

