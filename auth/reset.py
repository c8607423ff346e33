"""
auth/reset.py -- Password reset workflow: initiate, validate, consume.

Token lifecycle:
  - initiate() creates a 64-hex-char random token valid for 15 minutes and
    emails a link to it. A request within 2 minutes of the previous one is a
    silent no-op (anti-spam); otherwise the previous active token is marked
    used so only the newest link works.
  - validate() answers "is this token usable right now" for the reset form.
    It never raises -- an invalid token is an expected outcome.
  - consume() sets the new password, clears every refresh-token session and
    marks the token used, all in one store transaction. A second consume of
    the same token fails.

Enumeration safety:
  initiate() returns nothing and raises nothing for unknown emails, so the
  route answers identically either way. When the request passes its
  BackgroundTasks, the whole reset (lookup, token writes and the provider
  call) runs after the response is sent. Delivery failures are logged, never
  raised.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

from fastapi import BackgroundTasks

from auth.errors import BadRequest, InternalServer, StoreError
from auth.models import PasswordResetToken, ResetTokenStatus, User
from auth.passwords import PasswordHasher, enforce_password_policy
from auth.service import normalize_email
from auth.store import CredentialStore
from core.clock import Clock, utcnow
from core.mailer import Mailer, MailerError

logger = logging.getLogger("estatehub.auth.reset")

_INVALID_TOKEN = "Invalid or expired reset token."


class PasswordResetFlow:
    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        mailer: Mailer,
        base_url: str,
        token_ttl: timedelta = timedelta(minutes=15),
        resend_cooldown: timedelta = timedelta(minutes=2),
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._mailer = mailer
        self._base_url = base_url.rstrip("/")
        self.token_ttl = token_ttl
        self.resend_cooldown = resend_cooldown
        self._clock = clock

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    def initiate(self, email: str, background_tasks: Optional[BackgroundTasks] = None) -> None:
        """Start a reset for `email` if it belongs to an account.

        Args:
            email:            Address typed into the forgot-password form.
            background_tasks: Optional FastAPI BackgroundTasks. When given, the
                              lookup, token writes and email all run after the
                              response is returned, so known and unknown
                              emails cost the request the same.

        Raises InternalServer on a store failure, only when run inline.
        """
        email = normalize_email(email)
        if background_tasks is not None:
            background_tasks.add_task(self._initiate_detached, email)
            return
        self._start_reset(email)

    def _initiate_detached(self, email: str) -> None:
        try:
            self._start_reset(email)
        except InternalServer:
            # Logged in _start_reset; the response has already been sent.
            return

    def _start_reset(self, email: str) -> None:
        try:
            user = self._store.find_user_by_email(email)
            if user is None:
                logger.info("Password reset requested for an unknown email")
                return

            now = self._clock()
            existing = self._store.find_active_reset_token(user.id)
            if existing is not None:
                if existing.created_at > now - self.resend_cooldown:
                    logger.info("Password reset for user %s skipped (requested again too soon)", user.id)
                    return
                self._store.mark_reset_token_used(existing.id)

            reset = PasswordResetToken(
                user_id=user.id,
                token=secrets.token_hex(32),
                created_at=now,
                expires_at=now + self.token_ttl,
            )
            reset.id = self._store.save_reset_token(reset)
        except StoreError as exc:
            logger.exception("Password reset initiation failed")
            raise InternalServer("Failed to initiate password reset.") from exc

        self._deliver(user, self.reset_link(reset.token))

    def reset_link(self, token: str) -> str:
        return f"{self._base_url}/auth/reset-password?{urlencode({'token': token})}"

    def _deliver(self, user: User, link: str) -> None:
        try:
            self._mailer.send_password_reset_email(to_email=user.email, to_name=user.username, reset_link=link)
        except MailerError as e:
            # The token already exists; the user can ask again after the cooldown.
            logger.error("Failed to send password reset email to user %s: %s", user.id, e)
            return
        logger.info("Password reset email sent to user %s", user.id)

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, token: str) -> ResetTokenStatus:
        try:
            reset = self._usable(token)
            if reset is None:
                return ResetTokenStatus(is_valid=False)
            user = self._store.find_user_by_id(reset.user_id)
        except StoreError:
            logger.exception("Reset token validation failed")
            return ResetTokenStatus(is_valid=False)
        if user is None:
            return ResetTokenStatus(is_valid=False)
        return ResetTokenStatus(is_valid=True, email=user.email)

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume(self, token: str, new_password: str) -> None:
        """Set a new password using a reset token and sign out every device.

        Raises:
            BadRequest:      token unknown, used, expired, or its user is gone.
            ValidationError: new password fails the policy (all rules listed).
            InternalServer:  the store failed.

        Access tokens already issued stay valid until they expire; only
        refresh is cut off.
        """
        try:
            reset = self._usable(token)
            if reset is None:
                raise BadRequest(_INVALID_TOKEN)
            user = self._store.find_user_by_id(reset.user_id)
            if user is None:
                raise BadRequest(_INVALID_TOKEN)

            enforce_password_policy(new_password)

            if not self._store.complete_password_reset(user.id, self._hasher.hash(new_password), reset.id):
                # Consumed or expired by a concurrent request since the lookup.
                raise BadRequest(_INVALID_TOKEN)
        except StoreError as exc:
            logger.exception("Password reset failed")
            raise InternalServer("Failed to reset password.") from exc

        logger.info("Password reset completed for user %s; all sessions cleared", user.id)

    def _usable(self, token: str) -> PasswordResetToken | None:
        """The reset record if it exists, is unused and unexpired; else None."""
        if not token:
            return None
        reset = self._store.find_reset_token_by_value(token)
        if reset is None or reset.used or reset.expires_at <= self._clock():
            return None
        return reset
