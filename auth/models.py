"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; stores and services do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    basic = "basic"
    broker = "broker"
    admin = "admin"


@dataclass
class RefreshTokenRecord:
    """One device session. Embedded in User, never addressed on its own.

    The token value is opaque (random hex, no claims). Its only meaning is
    "this string is present in a user's list and not yet expired".
    """

    token: str
    expires_at: datetime
    created_at: datetime
    device: str = ""
    user_agent: str = ""


@dataclass
class User:
    """A registered account.

    hashed_password is populated only by store reads that need it (login,
    password reset) and is cleared before a User leaves the service layer.

    refresh_tokens holds at most Settings.max_sessions records, oldest first.
    Expired records are filtered out by the store on every read.
    """

    username: str
    email: str
    role: Role = Role.basic
    id: int | None = None
    hashed_password: str | None = None
    refresh_tokens: list[RefreshTokenRecord] = field(default_factory=list)
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PasswordResetToken:
    """A single-use password reset credential.

    At most one unused, unexpired token per user is honoured: issuing a new one
    marks the previous active token used.
    """

    user_id: int
    token: str
    expires_at: datetime
    created_at: datetime
    used: bool = False
    id: int | None = None


@dataclass
class TokenPair:
    """Freshly minted credentials returned by login and refresh."""

    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass
class ResetTokenStatus:
    is_valid: bool
    email: str | None = None
