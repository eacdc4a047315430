# consult_dispatch/infra/rate_limiter.py
"""
Throttle for creating consultation requests.

Every accepted POST /request-doctor rings real phones, so creation is
capped per client IP and, when the caller identifies itself, per
requesterId. A request is let through only if every key it carries is
under the limit; a rejected request does not use up quota.

State is per process: with N replicas the effective limit is N × limit.
"""
from __future__ import annotations

import time
from collections import defaultdict, deque
from typing import Callable

from fastapi import HTTPException, status

from consult_dispatch.infra.logging_config import get_logger
from consult_dispatch.infra.metrics import inc_counter

logger = get_logger(__name__)


class RequestRateLimiter:
    """Sliding-window limiter keyed by client IP and requester id."""

    def __init__(
        self,
        per_window: int,
        *,
        window_seconds: float = 60.0,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.per_window = per_window
        self.window_seconds = window_seconds
        self._max_keys = max_keys
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    @staticmethod
    def keys_for(client_ip: str | None, requester_id: str | None) -> list[str]:
        keys = [f"ip:{client_ip or 'unknown'}"]
        if requester_id:
            keys.append(f"requester:{requester_id}")
        return keys

    def hit(self, *keys: str) -> float | None:
        """
        Record one request under all keys.

        Returns None when allowed, otherwise seconds until the tightest
        key frees a slot (nothing is recorded in that case).
        """
        now = self._clock()
        cutoff = now - self.window_seconds

        retry_after = None
        for key in keys:
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.per_window:
                wait = hits[0] + self.window_seconds - now
                retry_after = max(retry_after or 0.0, wait)

        if retry_after is not None:
            return retry_after

        for key in keys:
            self._hits[key].append(now)

        if len(self._hits) > self._max_keys:
            self.prune()
        return None

    def prune(self) -> int:
        """Drop keys with no hits inside the window. Returns how many were dropped."""
        cutoff = self._clock() - self.window_seconds
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            del self._hits[key]
        if idle:
            logger.info(f"Rate limiter pruned {len(idle)} idle keys")
        return len(idle)

    def check(self, client_ip: str | None, requester_id: str | None) -> None:
        """
        Raises:
            HTTPException: 429 with Retry-After when over the limit
        """
        retry_after = self.hit(*self.keys_for(client_ip, requester_id))
        if retry_after is None:
            return

        logger.warning(
            f"Request creation throttled: ip={client_ip}, requester={requester_id}, "
            f"retry_after={retry_after:.1f}s"
        )
        inc_counter("dispatch_throttled_total")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(int(retry_after) + 1)},
        )
