"""
api/main.py -- FastAPI application entry point for Portcullis.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route limits from api.limiter
  4. SessionMiddleware     -- authlib's OAuth state between redirect and callback
  5. log_requests          -- one line per request
  6. session_gate          -- decode/refresh the session token, apply the route gate

Lifespan builds every service on app.state (see wire_state) and runs a
periodic purge of expired auth tokens and session ledger rows.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorResponse, HealthCheck, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.oauth import router as oauth_router
from api.routes.user import router as user_router
from auth import signals
from auth.flows import CredentialFlows
from auth.gate import DEFAULT_ROUTES, GateAction, evaluate
from auth.oauth import build_registry
from auth.resilient import ResilientStore
from auth.session import SessionTokenBuilder
from auth.store import IdentityStore
from auth.tokens import clear_session_cookie, decode_session, read_session_token, set_session_cookie
from core.breaker import CircuitBreaker
from core.config import Settings, get_settings
from core.errors import AuthApiError
from core.mailer import Mailer
from core.ratelimit import RateLimiter, build_rate_limit_storage

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("portcullis.api")

settings = get_settings()

SWEEP_INTERVAL = 10 * 60

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_state(app: FastAPI, cfg: Settings, store: IdentityStore, mailer: Mailer | None = None) -> None:
    """Build every request-time service around `store` and attach it to app.state.

    Split from lifespan so tests can wire an in-memory store (and a fake
    mailer) through exactly the same path as production.
    """
    db_breaker = CircuitBreaker(
        "database",
        threshold=cfg.db_breaker_threshold,
        timeout=cfg.db_breaker_timeout,
        exclude=(IntegrityError,),  # a duplicate row is an answer, not an outage
    )
    email_breaker = CircuitBreaker("email", threshold=cfg.email_breaker_threshold, timeout=cfg.email_breaker_timeout)
    if mailer is None:
        mailer = Mailer(
            cfg.resend_api_key,
            cfg.email_from,
            email_breaker,
            max_attempts=cfg.email_max_attempts,
            base_delay_ms=cfg.email_retry_base_ms,
        )
    resilient = ResilientStore(store, db_breaker)
    rate_limiter = RateLimiter(build_rate_limit_storage(cfg.redis_url))
    builder = SessionTokenBuilder(
        resilient,
        settle_ms=cfg.oauth_settle_ms,
        update_age=cfg.session_update_age,
        max_age=cfg.session_max_age,
    )

    app.state.settings = cfg
    app.state.store = resilient
    app.state.breakers = {"database": db_breaker, "email": mailer.breaker}
    app.state.rate_limiter = rate_limiter
    app.state.mailer = mailer
    app.state.token_builder = builder
    app.state.flows = CredentialFlows(resilient, rate_limiter, mailer, builder, cfg)
    app.state.oauth = build_registry(cfg)
    app.state.gate_routes = DEFAULT_ROUTES


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI) -> None:
    """Purge expired tokens and ledger rows every 10 minutes.

    Rate-limit windows need no sweeping: the limits storage expires them.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(SWEEP_INTERVAL)
        await run_in_threadpool(app.state.store.purge_expired)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build services on startup, release them on shutdown."""
    logger.info("Portcullis API starting up")
    store = IdentityStore(settings.database_url, create_schema=settings.auto_create_schema)
    wire_state(app, settings, store)
    if not app.state.mailer.configured:
        logger.warning("RESEND_API_KEY not set -- emails will be logged, not sent")
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    store.close()
    logger.info("Portcullis API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Portcullis",
    description="Authentication and session service: OAuth, magic links, credentials and route gating.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Session gate middleware
#
# Registered first so it runs innermost, after the request log has started its
# timer. Decodes the token once, refreshes it when stale, stores the claims on
# request.state.session and applies the route gate.
# ---------------------------------------------------------------------------


def _api_redirect_refusal(location: str, routes) -> JSONResponse:
    """403 for an API call the gate would redirect if it were a page.

    The body carries the page the client should send the user to.
    """
    if location == routes.verify_request:
        message, code = "Email verification required", "EMAIL_NOT_VERIFIED"
    elif location == routes.onboarding:
        message, code = "Onboarding required", "ONBOARDING_REQUIRED"
    else:
        message, code = "Not available for this session", "AUTHORIZATION_ERROR"
    content = ErrorResponse(error=message, code=code).model_dump(exclude_none=True)
    content["url"] = location
    return JSONResponse(status_code=403, content=content)


@app.middleware("http")
async def session_gate(request: Request, call_next):
    routes = getattr(request.app.state, "gate_routes", DEFAULT_ROUTES)
    path = request.url.path
    if routes.is_excluded(path):
        return await call_next(request)

    token = read_session_token(request)
    claims = decode_session(token) if token else None
    refreshed = None
    if claims is not None:
        builder: SessionTokenBuilder = request.app.state.token_builder
        if builder.needs_refresh(claims):
            refreshed, claims = await run_in_threadpool(builder.reissue, claims)
    request.state.session = claims

    decision = evaluate(path, claims, routes)
    is_api = path.startswith("/api/")
    if decision.action is GateAction.REJECT:
        if is_api:
            response = JSONResponse(
                status_code=401,
                content=ErrorResponse(error="Authentication required", code="AUTHENTICATION_ERROR").model_dump(
                    exclude_none=True
                ),
            )
        else:
            response = RedirectResponse(signals.signin_url(callback_url=path), status_code=302)
    elif decision.action is GateAction.REDIRECT:
        if is_api:
            response = _api_redirect_refusal(decision.location, routes)
        else:
            response = RedirectResponse(decision.location, status_code=302)
    else:
        response = await call_next(request)

    if refreshed is not None and "set-cookie" not in response.headers:
        set_session_cookie(response, refreshed)
    elif token and claims is None and "set-cookie" not in response.headers:
        # Expired or tampered token: stop the browser from sending it.
        clear_session_cookie(response)
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the app, so the last one added is the outermost.
# Added innermost-first: Session -> SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

# authlib stores the OAuth `state` value in the Starlette session between the
# authorization redirect and the callback. Without it the OAuth flow fails.
app.add_middleware(SessionMiddleware, secret_key=settings.secret_key, https_only=settings.secure_cookies)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])
# After auth_router: /callback/{provider} must not shadow /callback/email.
app.include_router(oauth_router, tags=["OAuth"])
app.include_router(user_router, tags=["User"])

# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler returns the same flat envelope:
#   {"success": false, "error": <message>, "code": <CODE>, "details"?: ...}
# details is only included when DEBUG=true.
# ---------------------------------------------------------------------------


def _envelope(message: str, code: str, details: str | None = None) -> dict:
    body = ErrorResponse(error=message, code=code, details=details if settings.debug else None)
    return body.model_dump(exclude_none=True)


@app.exception_handler(AuthApiError)
async def auth_api_error_handler(request: Request, exc: AuthApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.details or exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=_envelope(exc.message, exc.code, exc.details),
        headers=exc.headers or None,
    )


def _first_error_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Validation failed"
    err = errors[0]
    ctx_error = (err.get("ctx") or {}).get("error")
    if ctx_error is not None:
        # Raised by a field validator in auth/validators.py: already user-facing.
        return str(ctx_error)
    field = err.get("loc", ())[-1] if err.get("loc") else None
    if field == "email" and err.get("type") == "value_error":
        # EmailStr failure; the email-validator reason goes to details only.
        return "Invalid email format"
    msg = str(err.get("msg", "Validation failed"))
    return f"{field}: {msg}" if field not in (None, "body") else msg


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with the first failing field's message."""
    return JSONResponse(
        status_code=400,
        content=_envelope(_first_error_message(exc), "VALIDATION_ERROR", str(exc.errors())),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_envelope(str(exc.detail), f"HTTP_{exc.status_code}"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 from slowapi. Retry-After tells clients how many seconds to wait."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=_envelope("Too many requests. Please try again later.", "RATE_LIMIT_ERROR", str(exc)),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_envelope("An unexpected error occurred", "INTERNAL_ERROR", repr(exc)),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined here (not in a router) so it is always reachable. No rate limit and
# excluded from the session gate: load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Database ping through the breaker, breaker states and email configuration."""
    store: ResilientStore = request.app.state.store
    ping = store.ping()
    checks = {
        "database": HealthCheck(
            status="ok" if ping.ok else "error",
            detail=None if ping.ok else ping.failure.value,
        ),
        "email": HealthCheck(
            status="ok" if request.app.state.mailer.configured else "disabled",
        ),
    }
    breakers = {
        name: {
            "state": snap.state.value,
            "failure_count": snap.failure_count,
            "last_failure_at": snap.last_failure_at,
        }
        for name, snap in ((name, breaker.snapshot()) for name, breaker in request.app.state.breakers.items())
    }
    status = "healthy" if ping.ok else "degraded"
    return HealthResponse(status=status, version=VERSION, checks=checks, breakers=breakers)
