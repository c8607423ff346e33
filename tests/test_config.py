"""
tests/test_config.py -- Unit tests for core/config.py.

Settings are constructed directly (not via get_settings) with explicit
keyword arguments so the process environment cannot leak in.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

GOOD_KEY = "k" * 32


class TestSecretKey:
    def test_dev_mode_generates_key(self) -> None:
        settings = Settings(debug=True, secret_key="")
        assert len(settings.secret_key) == 64

    def test_production_requires_key(self) -> None:
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(debug=False, secret_key="")

    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32 characters"):
            Settings(debug=True, secret_key="too-short")


class TestDefaults:
    def test_secure_cookies_follow_debug(self) -> None:
        assert Settings(debug=False, secret_key=GOOD_KEY).secure_cookies is True
        assert Settings(debug=True, secret_key=GOOD_KEY).secure_cookies is False

    def test_secure_cookies_override(self) -> None:
        assert Settings(debug=True, secret_key=GOOD_KEY, secure_cookies=True).secure_cookies is True

    def test_token_and_session_defaults(self) -> None:
        settings = Settings(debug=True, secret_key=GOOD_KEY)
        assert settings.access_token_ttl == "15m"
        assert settings.refresh_token_ttl == "30d"
        assert settings.max_sessions == 3
        assert settings.reset_token_ttl_minutes == 15
        assert settings.default_rate_limit == "100/15 minutes"

    def test_owner_email_normalized(self) -> None:
        assert Settings(debug=True, secret_key=GOOD_KEY, owner_email=" Boss@EstateHub.test ").owner_email == (
            "boss@estatehub.test"
        )

    @pytest.mark.parametrize("ttl", ["15", "15 minutes", "1w", ""])
    def test_bad_duration_rejected(self, ttl: str) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=True, secret_key=GOOD_KEY, access_token_ttl=ttl)
