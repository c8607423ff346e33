"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Coverage:
  - parse_duration: every unit, malformed specifiers
  - Access tokens: round trip, expiry boundary, tampering, wrong secret, wrong type
  - Refresh tokens: length and uniqueness
  - Cookie helpers: attributes of the set and cleared refresh cookie
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.responses import JSONResponse
from jose import jwt

from auth.errors import BadRequest, InvalidToken
from auth.tokens import (
    REFRESH_COOKIE,
    TokenIssuer,
    clear_refresh_cookie,
    expiry_from_now,
    parse_duration,
    set_refresh_cookie,
)
from core.clock import utcnow
from conftest import TEST_SECRET, FakeClock


class TestParseDuration:
    @pytest.mark.parametrize(
        "spec, expected",
        [
            ("45s", timedelta(seconds=45)),
            ("15m", timedelta(minutes=15)),
            ("2h", timedelta(hours=2)),
            ("30d", timedelta(days=30)),
        ],
    )
    def test_units(self, spec: str, expected: timedelta) -> None:
        assert parse_duration(spec) == expected

    @pytest.mark.parametrize("spec", ["", "15", "m15", "15w", "1.5h", "-5m", "15 m"])
    def test_malformed_raises_bad_request(self, spec: str) -> None:
        with pytest.raises(BadRequest, match="Invalid duration format"):
            parse_duration(spec)

    def test_expiry_from_now_uses_clock(self) -> None:
        clock = FakeClock()
        assert expiry_from_now("15m", clock) == clock.now + timedelta(minutes=15)


class TestAccessTokens:
    def test_round_trip_claims(self, issuer: TokenIssuer) -> None:
        claims = issuer.verify_access_token(issuer.issue_access_token("42"))
        assert claims["sub"] == "42"
        assert claims["type"] == "access"
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_token_is_valid_just_before_expiry(self) -> None:
        """A token issued 14m50s ago with a 15m TTL must still verify."""
        clock = FakeClock(start=utcnow() - timedelta(minutes=14, seconds=50))
        issuer = TokenIssuer(TEST_SECRET, clock=clock)
        assert issuer.verify_access_token(issuer.issue_access_token("1"))["sub"] == "1"

    def test_token_is_rejected_after_expiry(self) -> None:
        """A token issued 15m10s ago with a 15m TTL must be rejected."""
        clock = FakeClock(start=utcnow() - timedelta(minutes=15, seconds=10))
        issuer = TokenIssuer(TEST_SECRET, clock=clock)
        with pytest.raises(InvalidToken):
            issuer.verify_access_token(issuer.issue_access_token("1"))

    def test_custom_ttl(self, issuer: TokenIssuer) -> None:
        claims = issuer.verify_access_token(issuer.issue_access_token("1", ttl="1h"))
        assert claims["exp"] - claims["iat"] == 3600

    def test_tampered_token_rejected(self, issuer: TokenIssuer) -> None:
        """Swapping the payload for one with another subject breaks the signature."""
        head, _payload, signature = issuer.issue_access_token("1").split(".")
        _h, forged_payload, _s = issuer.issue_access_token("2").split(".")
        with pytest.raises(InvalidToken):
            issuer.verify_access_token(f"{head}.{forged_payload}.{signature}")

    def test_wrong_secret_rejected(self, issuer: TokenIssuer) -> None:
        other = TokenIssuer("another-secret-key-that-is-32-characters-long")
        with pytest.raises(InvalidToken):
            issuer.verify_access_token(other.issue_access_token("1"))

    def test_garbage_rejected(self, issuer: TokenIssuer) -> None:
        with pytest.raises(InvalidToken):
            issuer.verify_access_token("not-a-jwt")

    def test_non_access_type_rejected(self, issuer: TokenIssuer) -> None:
        now = utcnow()
        forged = jwt.encode(
            {"sub": "1", "type": "refresh", "iat": now, "exp": now + timedelta(minutes=5)},
            TEST_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidToken):
            issuer.verify_access_token(forged)

    def test_missing_subject_rejected(self, issuer: TokenIssuer) -> None:
        now = utcnow()
        forged = jwt.encode({"type": "access", "iat": now, "exp": now + timedelta(minutes=5)}, TEST_SECRET)
        with pytest.raises(InvalidToken):
            issuer.verify_access_token(forged)

    def test_malformed_ttl_fails_at_construction(self) -> None:
        with pytest.raises(BadRequest):
            TokenIssuer(TEST_SECRET, access_ttl="fifteen minutes")


class TestRefreshTokens:
    def test_refresh_token_is_128_hex_chars(self) -> None:
        token = TokenIssuer.issue_refresh_token()
        assert len(token) == 128
        int(token, 16)

    def test_refresh_tokens_are_unique(self) -> None:
        assert len({TokenIssuer.issue_refresh_token() for _ in range(50)}) == 50

    def test_issue_pair_expiries(self, issuer: TokenIssuer, clock: FakeClock) -> None:
        pair = issuer.issue_pair("7")
        assert pair.access_expires_at == clock.now + timedelta(minutes=15)
        assert pair.refresh_expires_at == clock.now + timedelta(days=30)
        assert issuer.verify_access_token(pair.access_token)["sub"] == "7"


class TestRefreshCookie:
    def test_set_cookie_attributes(self) -> None:
        resp = JSONResponse({})
        set_refresh_cookie(resp, "abc123", max_age=30 * 86400, secure=True)
        header = resp.headers["set-cookie"]
        assert header.startswith(f"{REFRESH_COOKIE}=abc123")
        assert "HttpOnly" in header
        assert "Secure" in header
        assert "SameSite=strict" in header
        assert "Path=/" in header
        assert "Max-Age=2592000" in header

    def test_insecure_cookie_in_dev(self) -> None:
        resp = JSONResponse({})
        set_refresh_cookie(resp, "abc123", max_age=60, secure=False)
        assert "Secure" not in resp.headers["set-cookie"]

    def test_clear_cookie_expires_immediately(self) -> None:
        resp = JSONResponse({})
        clear_refresh_cookie(resp, secure=False)
        header = resp.headers["set-cookie"]
        assert header.startswith(f'{REFRESH_COOKIE}=""') or header.startswith(f"{REFRESH_COOKIE}=;")
        assert "Max-Age=0" in header
