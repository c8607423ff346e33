"""
tests/test_reset.py -- Unit tests for auth/reset.py (PasswordResetFlow).

Coverage:
  - initiate: unknown email is silent, token shape and link, resend cooldown,
    previous token superseded, mail failure swallowed, background runs defer
    every lookup and write
  - validate: valid, unknown, expired, used
  - consume: password changed, sessions cleared, single use, policy errors
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from auth.errors import BadRequest, InternalServer, StoreError, ValidationError
from auth.reset import PasswordResetFlow
from auth.store import CredentialStore
from conftest import STRONG_PASSWORD, FakeClock
from core.mailer import MailerError

NEW_PASSWORD = "Brand2NewPass"


def _sent_token(mailer: MagicMock) -> str:
    link = mailer.send_password_reset_email.call_args.kwargs["reset_link"]
    return parse_qs(urlparse(link).query)["token"][0]


class TestInitiate:
    def test_unknown_email_is_silent(self, reset_flow: PasswordResetFlow, mailer: MagicMock) -> None:
        assert reset_flow.initiate("nobody@example.com") is None
        mailer.send_password_reset_email.assert_not_called()

    def test_sends_link_with_64_hex_token(self, reset_flow, mailer, alice, store: CredentialStore) -> None:
        reset_flow.initiate("Alice@Example.com")
        kwargs = mailer.send_password_reset_email.call_args.kwargs
        assert kwargs["to_email"] == "alice@example.com"
        assert kwargs["to_name"] == "alice"
        assert kwargs["reset_link"].startswith("http://localhost:3000/auth/reset-password?token=")
        token = _sent_token(mailer)
        assert len(token) == 64
        int(token, 16)
        assert store.find_active_reset_token(alice.id).token == token

    def test_token_expires_after_fifteen_minutes(self, reset_flow, mailer, alice, store, clock: FakeClock) -> None:
        reset_flow.initiate("alice@example.com")
        reset = store.find_reset_token_by_value(_sent_token(mailer))
        assert reset.expires_at - reset.created_at == timedelta(minutes=15)

    def test_second_request_within_cooldown_is_ignored(self, reset_flow, mailer, alice, clock: FakeClock) -> None:
        reset_flow.initiate("alice@example.com")
        clock.advance(seconds=60)
        reset_flow.initiate("alice@example.com")
        assert mailer.send_password_reset_email.call_count == 1

    def test_new_request_supersedes_old_token(self, reset_flow, mailer, alice, store, clock: FakeClock) -> None:
        reset_flow.initiate("alice@example.com")
        first = _sent_token(mailer)
        clock.advance(minutes=3)
        reset_flow.initiate("alice@example.com")
        second = _sent_token(mailer)
        assert first != second
        assert store.find_reset_token_by_value(first).used is True
        assert reset_flow.validate(first).is_valid is False
        assert reset_flow.validate(second).is_valid is True

    def test_mailer_failure_is_swallowed(self, reset_flow, mailer, alice, store) -> None:
        mailer.send_password_reset_email.side_effect = MailerError("provider down")
        reset_flow.initiate("alice@example.com")
        assert store.find_active_reset_token(alice.id) is not None

    def test_background_run_defers_every_write(self, reset_flow, mailer, alice, store: CredentialStore) -> None:
        background = MagicMock()
        reset_flow.initiate("alice@example.com", background_tasks=background)
        mailer.send_password_reset_email.assert_not_called()
        assert store.find_active_reset_token(alice.id) is None

        task, *args = background.add_task.call_args.args
        task(*args)
        mailer.send_password_reset_email.assert_called_once()
        assert store.find_active_reset_token(alice.id).token == _sent_token(mailer)

    def test_unknown_email_writes_nothing(self, reset_flow, store: CredentialStore, monkeypatch) -> None:
        save = MagicMock(wraps=store.save_reset_token)
        monkeypatch.setattr(store, "save_reset_token", save)
        background = MagicMock()
        reset_flow.initiate("nobody@example.com", background_tasks=background)
        task, *args = background.add_task.call_args.args
        task(*args)
        save.assert_not_called()

    def test_background_store_failure_is_logged_not_raised(
        self, reset_flow, mailer, alice, store: CredentialStore, monkeypatch, caplog
    ) -> None:
        monkeypatch.setattr(store, "save_reset_token", MagicMock(side_effect=StoreError("boom")))
        background = MagicMock()
        reset_flow.initiate("alice@example.com", background_tasks=background)
        task, *args = background.add_task.call_args.args
        task(*args)
        mailer.send_password_reset_email.assert_not_called()
        assert "Password reset initiation failed" in caplog.text

    def test_store_failure_is_internal(self, reset_flow, alice, store: CredentialStore, monkeypatch) -> None:
        monkeypatch.setattr(store, "save_reset_token", MagicMock(side_effect=StoreError("boom")))
        with pytest.raises(InternalServer, match="Failed to initiate password reset."):
            reset_flow.initiate("alice@example.com")


class TestValidate:
    def test_valid_token(self, reset_flow, mailer, alice) -> None:
        reset_flow.initiate("alice@example.com")
        status = reset_flow.validate(_sent_token(mailer))
        assert status.is_valid is True
        assert status.email == "alice@example.com"

    @pytest.mark.parametrize("token", ["", "0" * 64, "not-hex"])
    def test_unknown_token(self, reset_flow, token: str) -> None:
        status = reset_flow.validate(token)
        assert status.is_valid is False
        assert status.email is None

    def test_expired_token(self, reset_flow, mailer, alice, clock: FakeClock) -> None:
        reset_flow.initiate("alice@example.com")
        clock.advance(minutes=16)
        assert reset_flow.validate(_sent_token(mailer)).is_valid is False


class TestConsume:
    def test_consume_changes_password_and_clears_sessions(
        self, reset_flow, mailer, authenticator, alice, store: CredentialStore
    ) -> None:
        authenticator.login("alice@example.com", STRONG_PASSWORD)
        reset_flow.initiate("alice@example.com")

        reset_flow.consume(_sent_token(mailer), NEW_PASSWORD)

        assert store.find_user_by_id(alice.id).refresh_tokens == []
        with pytest.raises(BadRequest):
            authenticator.login("alice@example.com", STRONG_PASSWORD)
        user, _ = authenticator.login("alice@example.com", NEW_PASSWORD)
        assert user.id == alice.id

    def test_second_consume_fails(self, reset_flow, mailer, alice) -> None:
        reset_flow.initiate("alice@example.com")
        token = _sent_token(mailer)
        reset_flow.consume(token, NEW_PASSWORD)
        with pytest.raises(BadRequest, match="Invalid or expired reset token."):
            reset_flow.consume(token, "Another3Pass")

    def test_expired_token_rejected(self, reset_flow, mailer, alice, clock: FakeClock) -> None:
        reset_flow.initiate("alice@example.com")
        clock.advance(minutes=15, seconds=1)
        with pytest.raises(BadRequest):
            reset_flow.consume(_sent_token(mailer), NEW_PASSWORD)

    def test_weak_password_keeps_token_usable(self, reset_flow, mailer, alice) -> None:
        reset_flow.initiate("alice@example.com")
        token = _sent_token(mailer)
        with pytest.raises(ValidationError):
            reset_flow.consume(token, "weak")
        assert reset_flow.validate(token).is_valid is True

    def test_unknown_token_rejected(self, reset_flow) -> None:
        with pytest.raises(BadRequest):
            reset_flow.consume("f" * 64, NEW_PASSWORD)
