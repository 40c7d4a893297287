"""Rate limiting for operator-triggered billing endpoints.

In-memory sliding window keyed by (user, endpoint). Consulted by the HTTP
layer before a manual reconcile reaches the orchestrator.
"""

import time
import uuid as uuid_pkg
from collections import defaultdict
from dataclasses import dataclass
from typing import TypeAlias

from reconciler.config import settings
from reconciler.core.exceptions import RateLimitedError


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    requests: int  # Maximum requests allowed
    window_seconds: int  # Time window in seconds


def reconcile_limit() -> RateLimitConfig:
    return RateLimitConfig(
        requests=settings.reconcile_rate_limit_requests,
        window_seconds=settings.reconcile_rate_limit_window_seconds,
    )


RECOVERY_EMAIL_LIMIT = RateLimitConfig(requests=5, window_seconds=3600)


UserId: TypeAlias = uuid_pkg.UUID
Timestamp: TypeAlias = float


class RateLimiter:
    """In-memory rate limiter with sliding window.

    Single-instance only. The recovery-email throttle that must hold across
    instances lives on the dunning row, not here.
    """

    def __init__(self, clock=time.time) -> None:
        self._requests: dict[UserId, dict[str, list[Timestamp]]] = defaultdict(
            lambda: defaultdict(list)
        )
        self._clock = clock
        self._last_cleanup = clock()
        self._cleanup_interval = 300

    def _cleanup_expired(self, window_seconds: int) -> None:
        """Remove expired entries to prevent memory growth."""
        now = self._clock()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        cutoff = now - window_seconds
        for user_id in list(self._requests):
            endpoints = self._requests[user_id]
            for endpoint in list(endpoints):
                endpoints[endpoint] = [ts for ts in endpoints[endpoint] if ts > cutoff]
                if not endpoints[endpoint]:
                    del endpoints[endpoint]
            if not endpoints:
                del self._requests[user_id]

        self._last_cleanup = now

    def check_rate_limit(
        self,
        user_id: UserId,
        endpoint_key: str,
        config: RateLimitConfig,
    ) -> None:
        """Record a request, raising RateLimitedError (429) if the window is full."""
        now = self._clock()
        cutoff = now - config.window_seconds

        self._cleanup_expired(config.window_seconds)

        recent_requests = [ts for ts in self._requests[user_id][endpoint_key] if ts > cutoff]

        if len(recent_requests) >= config.requests:
            retry_after = int(min(recent_requests) + config.window_seconds - now) + 1
            raise RateLimitedError(retry_after)

        recent_requests.append(now)
        self._requests[user_id][endpoint_key] = recent_requests

    def get_remaining(
        self,
        user_id: UserId,
        endpoint_key: str,
        config: RateLimitConfig,
    ) -> int:
        """Get remaining requests in current window."""
        cutoff = self._clock() - config.window_seconds
        timestamps = self._requests.get(user_id, {}).get(endpoint_key, [])
        return max(0, config.requests - sum(1 for ts in timestamps if ts > cutoff))


rate_limiter = RateLimiter()
