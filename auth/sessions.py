"""
auth/sessions.py -- Refresh-token sessions: bounded storage and rotation.

A refresh token moves through three states:

  Active   -- present in its owner's session list and unexpired.
  Rotated  -- exchanged by refresh(); the same slot now holds a new token,
              the old value is gone.
  Absent   -- removed by logout, evicted when a newer login pushes the list
              past max_sessions, cleared by a password reset, or expired.

There is no revoked-but-visible state: revocation is deletion.

Rotation is one conditional UPDATE in the store (match old token + unexpired,
replace). Two concurrent refreshes with the same token cannot both succeed;
the loser gets "invalid refresh token" exactly as if it had arrived after the
winner.
"""

from __future__ import annotations

import logging

from auth.errors import StoreError, Unauthorized
from auth.models import RefreshTokenRecord, TokenPair, User
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.clock import Clock, utcnow

logger = logging.getLogger("estatehub.auth.sessions")


class SessionRotator:
    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        max_sessions: int = 3,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self.max_sessions = max_sessions
        self._clock = clock

    def refresh(self, raw_refresh_token: str) -> TokenPair:
        """Exchange a valid refresh token for a new access/refresh pair.

        The matched session keeps its slot, device label and user agent; its
        token, expiry and created_at are replaced.

        Raises Unauthorized("Invalid refresh token.") if no unexpired session
        holds the token, and Unauthorized("Token refresh failed.") if the store
        fails -- the caller never sees persistence detail.
        """
        try:
            user = self._store.find_user_by_refresh_token(raw_refresh_token)
            if user is None:
                raise Unauthorized("Invalid refresh token.")

            pair = self._issuer.issue_pair(str(user.id))
            replacement = RefreshTokenRecord(
                token=pair.refresh_token,
                expires_at=pair.refresh_expires_at,
                created_at=self._clock(),
            )
            if not self._store.replace_refresh_token(user.id, raw_refresh_token, replacement):
                # Rotated, revoked or expired between lookup and update.
                raise Unauthorized("Invalid refresh token.")
        except StoreError:
            logger.exception("Token refresh failed")
            raise Unauthorized("Token refresh failed.") from None

        logger.info("Rotated refresh token for user %s", user.id)
        return pair

    def add_session(self, user: User, pair: TokenPair, user_agent: str = "", device: str = "") -> RefreshTokenRecord:
        """Record a new device session, evicting the oldest beyond max_sessions.

        The evicted device is not notified; its next refresh simply fails.
        """
        record = RefreshTokenRecord(
            token=pair.refresh_token,
            expires_at=pair.refresh_expires_at,
            created_at=self._clock(),
            device=device,
            user_agent=user_agent,
        )
        self._store.append_refresh_token(user.id, record, keep=self.max_sessions)
        user.refresh_tokens = (user.refresh_tokens + [record])[-self.max_sessions :]
        return record

    def revoke(self, user_id: int, refresh_token: str) -> bool:
        return self._store.remove_refresh_token(user_id, refresh_token)

    def revoke_all(self, user_id: int) -> int:
        return self._store.clear_refresh_tokens(user_id)

    def list_sessions(self, user_id: int) -> list[RefreshTokenRecord]:
        """Active sessions for the user, oldest first. Empty for unknown users."""
        user = self._store.find_user_by_id(user_id)
        if user is None:
            return []
        now = self._clock()
        return [record for record in user.refresh_tokens if record.expires_at > now]
