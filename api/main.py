"""
api/main.py -- FastAPI application entry point for the EstateHub auth service.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  0. log_requests          -- one log line per request with status and latency
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- app-wide default rate limit from api.limiter

Lifespan builds every service once (store, hasher, token issuer, session
rotator, authenticator, password reset flow, rate limiter, mailer), puts them
on app.state, and starts the purge task. Shutdown cancels the task and closes
the store and mailer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, StoreError, TooManyRequests, ValidationError
from auth.passwords import PasswordHasher
from auth.ratelimit import RateLimiter
from auth.reset import PasswordResetFlow
from auth.service import CredentialAuthenticator
from auth.sessions import SessionRotator
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.clock import Clock, utcnow
from core.config import Settings, get_settings
from core.mailer import Mailer, build_mailer

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("estatehub.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def configure_services(
    app: FastAPI,
    store: CredentialStore,
    settings: Settings,
    mailer: Optional[Mailer] = None,
    clock: Clock = utcnow,
) -> None:
    """Build the auth services around `store` and attach them to app.state.

    Shared by the real lifespan and the test fixtures so both wire the same
    object graph.
    """
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    issuer = TokenIssuer(
        settings.secret_key,
        access_ttl=settings.access_token_ttl,
        refresh_ttl=settings.refresh_token_ttl,
        clock=clock,
    )
    sessions = SessionRotator(store, issuer, max_sessions=settings.max_sessions, clock=clock)
    if mailer is None:
        mailer = build_mailer(
            settings.mailersend_api_token,
            settings.mailersend_from_email,
            settings.mailersend_from_name,
        )

    app.state.store = store
    app.state.token_issuer = issuer
    app.state.sessions = sessions
    app.state.mailer = mailer
    app.state.authenticator = CredentialAuthenticator(
        store, hasher, issuer, sessions, owner_email=settings.owner_email, clock=clock
    )
    app.state.password_reset = PasswordResetFlow(
        store,
        hasher,
        mailer,
        base_url=settings.app_base_url,
        token_ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
        resend_cooldown=timedelta(seconds=settings.reset_resend_cooldown_seconds),
        clock=clock,
    )
    app.state.rate_limiter = RateLimiter()


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired sessions and stale reset tokens every `interval_seconds`.

    The store call is blocking, so it runs on a worker thread. A failed pass
    is logged and retried on the next tick. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            counts = await asyncio.to_thread(app.state.store.purge_expired)
        except StoreError:
            logger.exception("Scheduled purge failed")
            continue
        logger.info(
            "Purged %d expired sessions and %d reset tokens",
            counts["sessions"],
            counts["reset_tokens"],
        )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order: store first (everything else depends on it), then the
    services, then the purge task, which references app.state.store.
    """
    settings = get_settings()
    logger.info("EstateHub auth API starting up")
    store = CredentialStore(settings.database_url)
    configure_services(app, store, settings)
    logger.info("Auth services initialized (%d registered users)", store.count_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.mailer.close()
    store.close()
    logger.info("EstateHub auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="EstateHub Auth API",
    description="Accounts, device sessions and password reset for EstateHub.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() inserts at the front of the stack, so the last call is the
# outermost layer. Register innermost first: SlowAPI, then CORS, then
# TrustedHost. The request logger below wraps all of them.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    # The refresh cookie must travel on cross-origin XHR from the web app.
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(
            exclude_none=True
        ),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render the auth service error family.

    5xx messages are replaced by a generic one unless DEBUG is on; the cause
    was already logged where it was raised.
    """
    message = exc.message
    if exc.status_code >= 500 and not get_settings().debug:
        message = "An unexpected error occurred."

    detail = None
    if isinstance(exc, ValidationError):
        detail = exc.errors
    elif getattr(exc, "field", None):
        detail = {"field": exc.field}

    response = _error_response(exc.status_code, exc.code, message, detail)
    if isinstance(exc, TooManyRequests):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the app-wide default limit is exceeded.

    Retry-After is the length of the limit's window, the longest a client
    could have to wait.
    """
    try:
        retry_after = int(exc.limit.limit.get_expiry())
    except AttributeError:
        retry_after = 60
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return _error_response(422, "validation_error", "Request validation failed.", errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    response = _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Exempt from the default rate
# limit -- load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
@limiter.exempt
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    database_ok = request.app.state.store.ping()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if database_ok else "error"},
    )
