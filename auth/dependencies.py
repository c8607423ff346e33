"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive in the `Authorization: Bearer <token>` header. The
refresh token never authenticates a request on its own; it lives in an
httpOnly cookie and is only read by /auth/refresh and /auth/logout.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises Unauthorized if unauthenticated.
require_role(*roles) wraps get_current_user() and raises Forbidden (403) when
the user holds none of the roles; require_admin is the admin-only instance.

The services live on app.state (wired in api/main.py lifespan) so these
helpers resolve them per request instead of importing module-level singletons.

Layer rule: may import from fastapi (Request) because this module is part of
the FastAPI dependency injection system; no imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.errors import Forbidden, NotFound, Unauthorized
from auth.models import Role, User


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request from its Bearer access token.

    Returns the User (without password hash) on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    token = bearer_token(request)
    if not token:
        return None
    try:
        claims = request.app.state.token_issuer.verify_access_token(token)
        return request.app.state.authenticator.get_user(int(claims["sub"]))
    except (Unauthorized, NotFound, ValueError):
        return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises Unauthorized (401) if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise Unauthorized()
    return user


def require_role(*roles: Role) -> Callable[[Request], User]:
    """Build a dependency that admits only users holding one of `roles`.

    Raises Unauthorized (401) if unauthenticated, Forbidden (403) otherwise.
    """
    allowed = frozenset(roles)

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if user.role not in allowed:
            raise Forbidden("Insufficient permissions.")
        return user

    return dependency


require_admin = require_role(Role.admin)
