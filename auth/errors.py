"""
auth/errors.py -- Closed error taxonomy for the auth services and stores.

Two families:

  AuthError subclasses are raised by the services and carry everything the
  API layer needs to render a response: HTTP status, a stable machine-readable
  code, and a human-readable message. api/main.py has one exception handler
  for the whole family.

  StoreError subclasses are raised by auth/store.py. The store translates
  SQLAlchemy exceptions into these variants at the boundary, so services match
  them with isinstance() instead of inspecting driver error strings.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error the auth services raise on purpose."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequest(AuthError):
    status_code = 400
    code = "bad_request"


class Unauthorized(AuthError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Authentication required.") -> None:
        super().__init__(message)


class InvalidToken(Unauthorized):
    """Access token failed signature, structure, or expiry checks.

    The three causes are deliberately not distinguished.
    """

    code = "invalid_token"

    def __init__(self, message: str = "Invalid token.") -> None:
        super().__init__(message)


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Access denied.") -> None:
        super().__init__(message)


class NotFound(AuthError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Resource not found.") -> None:
        super().__init__(message)


class Conflict(AuthError):
    status_code = 409
    code = "conflict"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ValidationError(AuthError):
    """One or more password-policy rules failed. `errors` lists all of them."""

    status_code = 422
    code = "validation_error"

    def __init__(self, errors: list[str]) -> None:
        super().__init__(", ".join(errors) or "Validation failed.")
        self.errors = list(errors)


class TooManyRequests(AuthError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Rate limit exceeded. Try again in {retry_after} seconds.")
        self.retry_after = retry_after


class InternalServer(AuthError):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "Internal server error.") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Persistence errors
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """The credential store could not complete an operation."""


class DuplicateRecordError(StoreError):
    """A unique column (username, email, token) already holds this value."""

    def __init__(self, field: str) -> None:
        super().__init__(f"duplicate value for {field}")
        self.field = field


class RecordNotFoundError(StoreError):
    """An update targeted a row that does not exist."""
