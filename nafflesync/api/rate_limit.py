"""
nafflesync.api.rate_limit — Per-Peer Webhook Rate Limiting
===========================================================

Caps each peer IP at ``WEBHOOK_MAX_REQUESTS_PER_MINUTE`` (default 100)
requests in a sliding one-minute window.  The request that would exceed
the cap gets HTTP 429 with ``{"error", "retryAfter"}`` and a
``Retry-After`` header; rejected requests are not counted.

State is in-process.  A restart forgets every window, which only ever
errs towards admitting.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from fastapi import HTTPException, Request, status

from nafflesync import constants as C
from nafflesync.engine.clock import Clock
from nafflesync.engine.policy import RateBucket

logger = logging.getLogger(__name__)

MIN_RETRY_AFTER = 1
MAX_RETRY_AFTER = C.WEBHOOK_WINDOW_SECONDS


class PeerRateLimiter:
    """Sliding-window rate limiter keyed by peer IP."""

    def __init__(
        self,
        max_requests: int = C.WEBHOOK_MAX_REQUESTS_PER_MINUTE,
        window_seconds: float = C.WEBHOOK_WINDOW_SECONDS,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock or Clock()
        self._buckets: dict[str, RateBucket] = {}

    @property
    def active_peers(self) -> int:
        return len(self._buckets)

    def hit(self, peer: str) -> tuple[bool, dict[str, Any]]:
        """Count one request from *peer* if it fits.

        Returns (allowed, info) where info holds ``remaining``,
        ``retry_after`` (whole seconds, clamped to [1, 60]) and ``limit``.
        """
        now = self.clock.now()
        bucket = self._buckets.get(peer)
        if bucket is None:
            bucket = self._buckets[peer] = RateBucket(window=self.window_seconds, window_start=now)
        bucket.prune(now)

        if bucket.request_count >= self.max_requests:
            retry_after = math.ceil(bucket.retry_after(now))
            return False, {
                "remaining": 0,
                "retry_after": min(MAX_RETRY_AFTER, max(MIN_RETRY_AFTER, retry_after)),
                "limit": self.max_requests,
            }

        bucket.hit(now)
        return True, {
            "remaining": self.max_requests - bucket.request_count,
            "retry_after": 0,
            "limit": self.max_requests,
        }

    def cleanup(self) -> int:
        """Forget peers whose window has emptied."""
        now = self.clock.now()
        idle = []
        for peer, bucket in self._buckets.items():
            bucket.prune(now)
            if not bucket.request_count:
                idle.append(peer)
        for peer in idle:
            del self._buckets[peer]
        return len(idle)

    def reset(self, peer: str | None = None) -> None:
        """Clear rate limit state. If peer is None, clear all."""
        if peer is None:
            self._buckets.clear()
        else:
            self._buckets.pop(peer, None)


def peer_of(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------
async def rate_limited_peer(request: Request) -> str:
    """Enforce the per-peer limit; returns the peer address.

    Use ``Depends(rate_limited_peer)`` on every ingress route.
    """
    limiter: PeerRateLimiter = request.app.state.rate_limiter
    peer = peer_of(request)
    allowed, info = limiter.hit(peer)
    if not allowed:
        logger.warning(
            "Rate limit exceeded for peer %s: %d requests per %ds",
            peer, limiter.max_requests, limiter.window_seconds,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "Too many requests", "retryAfter": info["retry_after"]},
            headers={"Retry-After": str(info["retry_after"])},
        )
    return peer
