"""
api/limiter.py -- Rate limiting at the HTTP edge.

Two layers share one client fingerprint:

  limiter      -- the shared slowapi Limiter. SlowAPIMiddleware (api/main.py)
                  applies Settings.default_rate_limit to every route as a
                  backstop. Using a single shared instance ensures all routes
                  share the same in-memory counter store.

  rate_limit() -- per-endpoint gates for the sensitive auth routes, declared
                  as route dependencies. They delegate to the RateLimiter on
                  app.state (auth/ratelimit.py) so each endpoint counts in its
                  own scope and rejections render as TooManyRequests.

Fingerprint: "<client ip>:<first 50 chars of User-Agent>". The IP is the first
X-Forwarded-For hop, then X-Real-IP, then the socket peer. Forwarding headers
are only trustworthy behind a proxy that overwrites them.
"""

from collections.abc import Callable

from fastapi import Request
from slowapi import Limiter

from core.config import get_settings

_USER_AGENT_PREFIX = 50


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def client_fingerprint(request: Request) -> str:
    user_agent = request.headers.get("user-agent") or "unknown"
    return f"{client_ip(request)}:{user_agent[:_USER_AGENT_PREFIX]}"


limiter = Limiter(
    key_func=client_fingerprint,
    default_limits=[get_settings().default_rate_limit],
    storage_uri="memory://",
    strategy="fixed-window",
)


def rate_limit(max_requests: int, window_seconds: int, scope: str) -> Callable[[Request], None]:
    """Build a route dependency allowing `max_requests` per `window_seconds` per client.

    Usage:
        @router.post("/auth/login", dependencies=[Depends(rate_limit(10, 15 * 60, "login"))])
    """

    def dependency(request: Request) -> None:
        gate = request.app.state.rate_limiter.limit(max_requests, window_seconds, scope)
        gate(client_fingerprint(request))

    return dependency
