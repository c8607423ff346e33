"""
auth/service.py -- Credential authentication: register, login, logout.

CredentialAuthenticator is built once at startup with its collaborators
(store, hasher, token issuer, session rotator) and shared by every request.
Rate limiting is applied in front of it by the route layer (register 5/15min,
login 10/15min per client fingerprint); the service itself is not aware of it.

Enumeration safety [C1]:
  login() answers "Invalid email or password." for both an unknown email and
  a wrong password, and runs bcrypt in both cases so response timing does not
  reveal which one happened. Do NOT add an early return before the hash check.

Role elevation:
  An account registered with Settings.owner_email gets the admin role. This
  trusts whoever controls that inbox at registration time and has no other
  safeguard; keep OWNER_EMAIL unset unless you need it.
"""

from __future__ import annotations

import dataclasses
import logging

from auth.errors import BadRequest, Conflict, DuplicateRecordError, InternalServer, NotFound, StoreError
from auth.models import Role, TokenPair, User
from auth.passwords import PasswordHasher, enforce_password_policy
from auth.sessions import SessionRotator
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.clock import Clock, utcnow

logger = logging.getLogger("estatehub.auth")

_BAD_CREDENTIALS = "Invalid email or password."

# Checked in order; the first substring found in the User-Agent wins.
_DEVICE_MARKERS = [
    ("Mobile", "Mobile Device"),
    ("Tablet", "Tablet"),
    ("Windows", "Windows PC"),
    ("Mac", "Mac"),
    ("Linux", "Linux PC"),
]


def device_label(user_agent: str) -> str:
    """Coarse device name shown in the session list."""
    for marker, label in _DEVICE_MARKERS:
        if marker in user_agent:
            return label
    return "Unknown Device"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def public_user(user: User) -> User:
    """Copy of `user` safe to hand outside the service layer (no password hash)."""
    return dataclasses.replace(user, hashed_password=None)


class CredentialAuthenticator:
    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        issuer: TokenIssuer,
        sessions: SessionRotator,
        owner_email: str = "",
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._issuer = issuer
        self._sessions = sessions
        self._owner_email = normalize_email(owner_email) if owner_email else ""
        self._clock = clock

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, password: str) -> User:
        """Create a local account.

        Raises:
            Conflict:        email or username already in use (field named).
            ValidationError: password fails one or more policy rules; every
                             failing rule is listed.
            InternalServer:  the store failed.
        """
        username = username.strip()
        email = normalize_email(email)
        try:
            existing = self._store.find_user_by_email_or_username(email, username)
            if existing is not None:
                raise _conflict_for("email" if existing.email == email else "username")

            enforce_password_policy(password)

            role = Role.admin if self._owner_email and email == self._owner_email else Role.basic
            user = User(
                username=username,
                email=email,
                role=role,
                hashed_password=self._hasher.hash(password),
            )
            user.id = self._store.create_user(user)
            created = self._store.find_user_by_id(user.id) or user
        except DuplicateRecordError as exc:
            # Lost a race with a concurrent registration of the same identity.
            raise _conflict_for(exc.field) from exc
        except StoreError as exc:
            logger.exception("User registration failed")
            raise InternalServer("Registration failed.") from exc

        logger.info("Registered user %s (role=%s)", user.id, user.role.value)
        return public_user(created)

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, user_agent: str = "", device: str = "") -> tuple[User, TokenPair]:
        """Verify credentials, open a device session and mint a token pair.

        Returns the user without its password hash. The session list keeps at
        most SessionRotator.max_sessions entries; the oldest is evicted.

        Raises BadRequest("Invalid email or password.") for an unknown email
        and for a wrong password alike.
        """
        try:
            user = self._store.find_user_by_email(normalize_email(email))
            if user is None or not user.hashed_password:
                # Equalize timing -- do NOT return early before running bcrypt [C1]
                self._hasher.verify_dummy(password)
                raise BadRequest(_BAD_CREDENTIALS)
            if not self._hasher.verify(password, user.hashed_password):
                raise BadRequest(_BAD_CREDENTIALS)

            pair = self._issuer.issue_pair(str(user.id))
            self._sessions.add_session(user, pair, user_agent=user_agent, device=device or device_label(user_agent))
            user.last_login_at = self._clock()
            self._store.save_user(user)
        except StoreError as exc:
            logger.exception("User login failed")
            raise InternalServer("Login failed.") from exc

        logger.info("User %s logged in (%d active sessions)", user.id, len(user.refresh_tokens))
        return public_user(user), pair

    def logout(self, user_id: int, refresh_token: str | None = None) -> None:
        """End one device session, or every session when no token is given."""
        try:
            if refresh_token:
                self._sessions.revoke(user_id, refresh_token)
            else:
                removed = self._sessions.revoke_all(user_id)
                logger.info("Logged user %s out of %d sessions", user_id, removed)
        except StoreError as exc:
            logger.exception("User logout failed")
            raise InternalServer("Logout failed.") from exc

    def revoke_sessions(self, user_id: int) -> int:
        """Sign another account out of every device. Returns the number removed."""
        self.get_user(user_id)
        try:
            removed = self._sessions.revoke_all(user_id)
        except StoreError as exc:
            logger.exception("Session revocation failed")
            raise InternalServer("Session revocation failed.") from exc
        logger.info("Revoked %d sessions for user %s", removed, user_id)
        return removed

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> User:
        user = self._store.find_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return public_user(user)

    def get_user_by_email(self, email: str) -> User:
        user = self._store.find_user_by_email(normalize_email(email))
        if user is None:
            raise NotFound("User not found.")
        return public_user(user)


def _conflict_for(field: str) -> Conflict:
    if field == "email":
        return Conflict("This email is already registered.", field="email")
    return Conflict("Username already taken.", field="username")
