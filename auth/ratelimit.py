"""
auth/ratelimit.py -- Per-process fixed-window rate limiter for the auth endpoints.

Built on `limits`, the counter engine underneath slowapi (api/limiter.py).
slowapi only understands decorator-declared limits keyed by one key function;
the auth gates also need a per-endpoint scope and a TooManyRequests error that
the services' exception handler renders like every other AuthError.

Window semantics (fixed window, not a true sliding window):
  - The first hit for a (scope, fingerprint) pair opens a window of
    `window_seconds` and sets its reset time.
  - Hits are counted until `max_requests` is reached; the next hit raises
    TooManyRequests with the whole seconds left until the reset.
  - When the reset time passes the entry is dropped and the next hit opens a
    fresh window. MemoryStorage also sweeps expired keys on a background
    timer, which bounds memory for clients that never come back.

Scaling: counters live in this process only. Several workers or instances
each keep their own counts; a shared backend (Redis via limits' RedisStorage)
is needed before this can protect a horizontally scaled deployment.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from auth.errors import TooManyRequests

logger = logging.getLogger("estatehub.auth.ratelimit")

Gate = Callable[[str], None]


class RateLimiter:
    """Owner of the process-wide counter map.

    Usage:
        limiter = RateLimiter()
        gate = limiter.limit(5, 15 * 60, scope="register")
        gate(client_fingerprint)   # raises TooManyRequests when over the limit
    """

    def __init__(self) -> None:
        self._storage = MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self._storage)
        self._gates: dict[tuple[str, int, int], Gate] = {}
        self._lock = threading.Lock()

    def limit(self, max_requests: int, window_seconds: int, scope: str = "default") -> Gate:
        """Return the gate for `max_requests` hits per `window_seconds`.

        Gates are cached by (scope, max_requests, window_seconds) so route
        dependencies can call this on every request.
        """
        cache_key = (scope, max_requests, window_seconds)
        with self._lock:
            gate = self._gates.get(cache_key)
            if gate is None:
                gate = self._build_gate(max_requests, window_seconds, scope)
                self._gates[cache_key] = gate
        return gate

    def _build_gate(self, max_requests: int, window_seconds: int, scope: str) -> Gate:
        item = RateLimitItemPerSecond(max_requests, window_seconds)

        def gate(key: str) -> None:
            # hit() increments and compares under the storage lock.
            if self._strategy.hit(item, scope, key):
                return
            reset_time = self._strategy.get_window_stats(item, scope, key)[0]
            retry_after = max(1, math.ceil(reset_time - time.time()))
            logger.info("Rate limit hit on %s (retry in %ds)", scope, retry_after)
            raise TooManyRequests(retry_after)

        return gate

    def reset(self) -> None:
        """Drop every counter. Used by tests and the CLI."""
        self._storage.reset()
