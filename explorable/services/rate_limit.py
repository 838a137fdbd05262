"""Per-user sliding-window rate limiting.

Counts live in this process only and reset on restart. Every counted
request is timestamped; a request is refused once ``requests`` timestamps
fall inside the trailing ``window_seconds``.
"""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import structlog

from explorable.config import RateLimitConfig
from explorable.errors import RateLimitedError

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    # Epoch seconds at which the oldest counted request leaves the window
    reset: float


class RateLimiter:
    """Sliding-window counter keyed by user id."""

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._log = logger.bind(service="rate_limiter")

    def hit(self, key: str) -> RateLimitStatus:
        """Count one request for ``key`` unless the window is already full."""
        now = self._clock()
        window = self._config.window_seconds
        limit = self._config.requests

        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= now - window:
            hits.popleft()

        if len(hits) >= limit:
            return RateLimitStatus(
                allowed=False, limit=limit, remaining=0, reset=hits[0] + window
            )

        hits.append(now)
        return RateLimitStatus(
            allowed=True,
            limit=limit,
            remaining=limit - len(hits),
            reset=hits[0] + window,
        )

    def enforce(self, key: str) -> None:
        """Count a request; raise once ``key`` is over its quota.

        Raises:
            RateLimitedError: Window is full; nothing was counted
        """
        if not self._config.enabled:
            return

        status = self.hit(key)
        if status.allowed:
            return

        reset = math.ceil(status.reset)
        self._log.info("rate_limit.exceeded", key=key, limit=status.limit, reset=reset)
        resets_at = datetime.fromtimestamp(reset, tz=timezone.utc).isoformat()
        raise RateLimitedError(
            f"Rate limit exceeded. Resets at {resets_at}",
            details={"limit": status.limit, "remaining": status.remaining, "reset": reset},
        )
