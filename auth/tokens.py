"""
auth/tokens.py -- Access tokens, refresh tokens, and the refresh cookie.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens carry only the user id
       (sub), a type marker, iat and exp. Validity is decided by signature and
       embedded expiry alone -- there is no store lookup, so an access token
       stays valid until it expires even after logout or password reset.
       verify_access_token() raises InvalidToken for every failure; the route
       layer turns that into a 401.

  Refresh tokens: secrets.token_hex(64) gives 512 bits of entropy and carries
       no claims. A refresh token is valid only while the store holds it in a
       user's session list and its recorded expiry is in the future.

  Durations: "<amount><unit>" with unit s/m/h/d, e.g. "15m", "30d". A
       malformed duration is a programming error and raises BadRequest.

  SECRET_KEY: passed in by the caller (api/main.py reads it from
       core.config.get_settings()). TokenIssuer is built once per process.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta

from jose import JWTError, jwt

from auth.errors import BadRequest, InvalidToken
from auth.models import TokenPair
from core.clock import Clock, utcnow

_ALGORITHM = "HS256"

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

REFRESH_COOKIE = "refresh_token"


def parse_duration(duration: str) -> timedelta:
    """Convert "15m" / "30d" style specifiers to a timedelta."""
    match = _DURATION_RE.match(duration)
    if not match:
        raise BadRequest("Invalid duration format")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])


def expiry_from_now(duration: str, clock: Clock = utcnow) -> datetime:
    """Absolute UTC expiry `duration` from now. Used for both token families."""
    return clock() + parse_duration(duration)


class TokenIssuer:
    """Mints and verifies the two token families.

    Usage:
        issuer = TokenIssuer(settings.secret_key)
        pair = issuer.issue_pair(str(user.id))
        claims = issuer.verify_access_token(pair.access_token)
    """

    def __init__(
        self,
        secret_key: str,
        access_ttl: str = "15m",
        refresh_ttl: str = "30d",
        clock: Clock = utcnow,
    ) -> None:
        # Fail at startup, not on the first login, if a TTL is malformed.
        parse_duration(access_ttl)
        parse_duration(refresh_ttl)
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, subject: str, ttl: str | None = None) -> str:
        now = self._clock()
        payload = {
            "sub": subject,
            "type": "access",
            "iat": now,
            "exp": now + parse_duration(ttl or self.access_ttl),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify_access_token(self, token: str) -> dict:
        """Decode and verify an access token. Raises InvalidToken on any failure.

        Expired and tampered tokens are reported identically.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except JWTError as exc:
            raise InvalidToken() from exc
        if payload.get("type") != "access" or not payload.get("sub"):
            raise InvalidToken()
        return payload

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    @staticmethod
    def issue_refresh_token() -> str:
        return secrets.token_hex(64)

    def expiry_from_now(self, duration: str) -> datetime:
        return expiry_from_now(duration, self._clock)

    def issue_pair(self, subject: str) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(subject),
            refresh_token=self.issue_refresh_token(),
            access_expires_at=self.expiry_from_now(self.access_ttl),
            refresh_expires_at=self.expiry_from_now(self.refresh_ttl),
        )


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, max_age: int, secure: bool) -> None:
    """Write the refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests, so the refresh
        endpoint cannot be driven from another origin.
    secure: only sent over HTTPS (SECURE_COOKIES, on outside dev mode).
    max_age: matches the refresh token lifetime.
    """
    response.set_cookie(
        REFRESH_COOKIE,
        value=token,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="strict",
        secure=secure,
    )


def clear_refresh_cookie(response, secure: bool) -> None:
    """Expire the refresh cookie immediately (max-age=0)."""
    response.set_cookie(
        REFRESH_COOKIE,
        value="",
        max_age=0,
        path="/",
        httponly=True,
        samesite="strict",
        secure=secure,
    )
