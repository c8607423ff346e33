"""
auth/passwords.py -- Password hashing and password policy.

Passwords: bcrypt, used directly rather than through passlib. passlib's
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. The cost factor defaults to 12 and is
configurable (tests drop it to the bcrypt minimum of 4).

Timing equalization [C1]: PasswordHasher keeps a dummy hash computed once at
construction. Login calls verify_dummy() when the email is unknown so the
response time does not reveal whether an account exists.
"""

from __future__ import annotations

import re

import bcrypt

from auth.errors import ValidationError

_MIN_LENGTH = 8

_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"\d"), "Password must contain at least one number"),
]


def password_policy_errors(password: str) -> list[str]:
    """Return every unmet password rule, in a stable order. Empty list = valid."""
    errors: list[str] = []
    if len(password) < _MIN_LENGTH:
        errors.append(f"Password must be at least {_MIN_LENGTH} characters long")
    for pattern, message in _RULES:
        if not pattern.search(password):
            errors.append(message)
    return errors


def enforce_password_policy(password: str) -> None:
    """Raise ValidationError listing all violated rules, not just the first."""
    errors = password_policy_errors(password)
    if errors:
        raise ValidationError(errors)


class PasswordHasher:
    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash = self.hash("estatehub_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the given plaintext password.

        bcrypt silently truncates input beyond 72 bytes. The API layer caps
        password fields at 100 characters.
        """
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext password matches the bcrypt hash."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Malformed hash in the store -- treat as a mismatch.
            return False

    def verify_dummy(self, plain: str) -> None:
        """Burn one bcrypt check so unknown-account logins cost the same as real ones."""
        self.verify(plain, self._dummy_hash)
