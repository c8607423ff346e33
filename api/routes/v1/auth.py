"""
api/routes/v1/auth.py -- Account, session and password reset endpoints.

Routes:
  POST /api/v1/auth/register                 -- create a local account; 201
  POST /api/v1/auth/login                    -- password login; sets refresh cookie
  POST /api/v1/auth/refresh                  -- rotate refresh cookie; new access token
  POST /api/v1/auth/logout                   -- end this session or all sessions (requires auth)
  GET  /api/v1/auth/me                       -- current user info (requires auth)
  GET  /api/v1/auth/sessions                 -- active device sessions (requires auth)
  POST /api/v1/auth/users/{id}/revoke-sessions -- sign an account out everywhere (admin)
  POST /api/v1/auth/forgot-password          -- start a reset; generic answer always
  POST /api/v1/auth/reset-password           -- set a new password with a reset token
  GET  /api/v1/auth/reset-password/validate  -- is a reset token usable right now

Security:
  [H2] register 5/15min, login 10/15min, forgot-password 3/10min and
       reset-password 5/15min per client fingerprint (api.limiter.rate_limit).
  [C1] login and forgot-password answer identically for unknown emails.
  [M5] Cache-Control: no-store on every response that carries a token.

Handlers are plain `def`: FastAPI runs them on its thread pool, so blocking
store and bcrypt calls never stall the event loop.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import rate_limit
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    ResetTokenValidation,
    SessionInfo,
    SessionsResponse,
    TokenResponse,
    UserSummary,
)
from auth.dependencies import get_current_user, require_admin
from auth.errors import Unauthorized
from auth.models import User
from auth.service import device_label
from auth.tokens import REFRESH_COOKIE, clear_refresh_cookie, parse_duration, set_refresh_cookie
from core.config import get_settings

# Auth policy:
# - POST /auth/register, /auth/login, /auth/refresh:   public
# - POST /auth/forgot-password, /auth/reset-password:  public
# - GET  /auth/reset-password/validate:                public
# - POST /auth/logout, GET /auth/me, GET /auth/sessions: Bearer access token
# - POST /auth/users/{id}/revoke-sessions:           Bearer access token, admin role
router = APIRouter()

_FORGOT_PASSWORD_ACK = "If an account exists with that email, a password reset link has been sent."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _token_response(content: dict, refresh_token: str, status_code: int = 200) -> JSONResponse:
    """JSON response that sets the refresh cookie and forbids caching [M5]."""
    settings = get_settings()
    resp = JSONResponse(status_code=status_code, content=content)
    max_age = int(parse_duration(settings.refresh_token_ttl).total_seconds())
    set_refresh_cookie(resp, refresh_token, max_age=max_age, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=UserSummary,
    status_code=201,
    dependencies=[Depends(rate_limit(5, 15 * 60, "register"))],
)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a basic account. Does not log the user in."""
    user = request.app.state.authenticator.register(body.username, body.email, body.password)
    return JSONResponse(status_code=201, content=UserSummary.from_user(user).model_dump(mode="json"))


@router.post(
    "/auth/login",
    response_model=LoginResponse,
    dependencies=[Depends(rate_limit(10, 15 * 60, "login"))],
)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    The access token is returned in the body; the refresh token is set only as
    an httpOnly cookie so page scripts never see it.
    """
    user_agent = request.headers.get("user-agent", "")
    user, pair = request.app.state.authenticator.login(
        body.email, body.password, user_agent=user_agent, device=device_label(user_agent)
    )
    content = LoginResponse(
        user=UserSummary.from_user(user),
        access_token=pair.access_token,
        expires_at=pair.access_expires_at,
    ).model_dump(mode="json")
    return _token_response(content, pair.refresh_token)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and a rotated cookie."""
    raw = request.cookies.get(REFRESH_COOKIE)
    if not raw:
        raise Unauthorized("Refresh token missing.")
    pair = request.app.state.sessions.refresh(raw)
    content = TokenResponse(access_token=pair.access_token, expires_at=pair.access_expires_at).model_dump(mode="json")
    return _token_response(content, pair.refresh_token)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """End the session named by the refresh cookie, or every session.

    Without a cookie, or with {"everywhere": true}, all of the user's devices
    are signed out. Access tokens already issued stay valid until they expire.
    """
    everywhere = body.everywhere if body is not None else False
    raw = None if everywhere else request.cookies.get(REFRESH_COOKIE)
    request.app.state.authenticator.logout(current_user.id, raw)

    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_refresh_cookie(resp, secure=get_settings().secure_cookies)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserSummary)
def me(current_user: User = Depends(get_current_user)) -> UserSummary:
    """Return identity information for the currently authenticated user."""
    return UserSummary.from_user(current_user)


@router.get("/auth/sessions", response_model=SessionsResponse)
def list_sessions(request: Request, current_user: User = Depends(get_current_user)) -> SessionsResponse:
    """List the user's active device sessions, oldest first."""
    records = request.app.state.sessions.list_sessions(current_user.id)
    return SessionsResponse(sessions=[SessionInfo.from_record(r) for r in records])


@router.post(
    "/auth/users/{user_id}/revoke-sessions",
    response_model=MessageResponse,
    dependencies=[Depends(require_admin)],
)
def revoke_user_sessions(request: Request, user_id: int) -> MessageResponse:
    """Sign an account out of every device. Admin only."""
    removed = request.app.state.authenticator.revoke_sessions(user_id)
    return MessageResponse(message=f"Revoked {removed} session(s).")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post(
    "/auth/forgot-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit(3, 10 * 60, "forgot-password"))],
)
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
) -> MessageResponse:
    """Request a reset link. The answer never reveals whether the email is registered [C1]."""
    request.app.state.password_reset.initiate(body.email, background_tasks=background_tasks)
    return MessageResponse(message=_FORGOT_PASSWORD_ACK)


@router.post(
    "/auth/reset-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit(5, 15 * 60, "reset-password"))],
)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password and sign out every device."""
    request.app.state.password_reset.consume(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. Please log in with your new password.")


@router.get("/auth/reset-password/validate", response_model=ResetTokenValidation)
def validate_reset_token(request: Request, token: str = Query(default="", max_length=128)) -> ResetTokenValidation:
    """Tell the reset form whether to show the password fields."""
    status = request.app.state.password_reset.validate(token)
    return ResetTokenValidation.from_status(status)
