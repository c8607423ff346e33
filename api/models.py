"""
API request and response models for EstateHub auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Password strength is NOT validated here. The password policy lives in
auth/passwords.py so that registration and reset report every failing rule
in one ValidationError; these models only bound field sizes.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import RefreshTokenRecord, ResetTokenStatus, Role, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[a-zA-Z0-9_ ]+$"
# Shape check only; deliverability is proven by the reset email.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
RESET_TOKEN_PATTERN = r"^[0-9a-f]{64}$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=100)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class LogoutRequest(BaseModel):
    """Optional body for POST /api/v1/auth/logout.

    everywhere=True ends every session even when a refresh cookie is present.
    """

    everywhere: bool = False


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(pattern=RESET_TOKEN_PATTERN)
    new_password: str = Field(min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class UserSummary(BaseModel):
    """Public view of an account. Never carries the password hash or tokens."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: Role
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class TokenResponse(BaseModel):
    """Access token plus its absolute expiry. The refresh token travels only in the cookie."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class LoginResponse(TokenResponse):
    user: UserSummary


class SessionInfo(BaseModel):
    """One active device session. The refresh token value is never exposed."""

    model_config = ConfigDict(frozen=True)

    device: str
    user_agent: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_record(cls, record: RefreshTokenRecord) -> "SessionInfo":
        return cls(
            device=record.device,
            user_agent=record.user_agent,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )


class SessionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    sessions: list[SessionInfo]


class ResetTokenValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    email: Optional[str] = None

    @classmethod
    def from_status(cls, status: ResetTokenStatus) -> "ResetTokenValidation":
        return cls(is_valid=status.is_valid, email=status.email)
