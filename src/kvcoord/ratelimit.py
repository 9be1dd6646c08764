"""Sliding-window rate limiter.

Each subject owns a sorted set of request ids scored by arrival time in unix
ms. Arrival time comes from the store clock, never the caller, so hosts with
skewed clocks still share one window. One atomic script prunes entries that
left the window, counts the rest and records the new request only if the
count is under the limit, so concurrent callers can never overshoot.
"""

from __future__ import annotations

import uuid

import structlog

from kvcoord.adapters.base import AsyncStoreAdapter
from kvcoord.duration import parse_duration
from kvcoord.errors import InvalidLimit, InvalidWindow
from kvcoord.scripts import SLIDING_WINDOW_ADMIT, SLIDING_WINDOW_COUNT
from kvcoord.types import Duration, RateLimitResult

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Admission control over a sliding time window."""

    def __init__(
        self,
        adapter: AsyncStoreAdapter,
        *,
        key_prefix: str = "ratelimit",
    ) -> None:
        """Initialize the rate limiter.

        Args:
            adapter: Store adapter
            key_prefix: Namespace for window keys; keep it apart from cache keys
        """
        self._adapter = adapter
        self._key_prefix = key_prefix

    def _key(self, subject: str) -> str:
        return f"{self._key_prefix}:{subject}"

    async def allow(self, subject: str, limit: int, window: Duration) -> RateLimitResult:
        """Check and record one request for subject.

        Args:
            subject: Limited entity (user id, IP address, API key, ...)
            limit: Max requests admitted per window
            window: Window length

        Returns:
            RateLimitResult; when denied, retry_after is the time until the
            oldest recorded request leaves the window

        Raises:
            InvalidLimit: limit <= 0
            InvalidWindow: window <= 0
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidLimit(limit)
        window_ms = _window_ms(window)

        allowed, retry_after, remaining = await self._adapter.run_atomic(
            SLIDING_WINDOW_ADMIT,
            [self._key(subject)],
            [window_ms, limit, uuid.uuid4().hex],
        )
        result = RateLimitResult(
            allowed=bool(allowed),
            limit=limit,
            remaining=int(remaining),
            retry_after=int(retry_after),
        )
        if not result.allowed:
            logger.debug(
                "rate limit exceeded",
                subject=subject,
                limit=limit,
                retry_after_ms=result.retry_after,
            )
        return result

    async def status(self, subject: str, window: Duration) -> int:
        """Number of requests currently inside the window, without recording one."""
        window_ms = _window_ms(window)
        count = await self._adapter.run_atomic(
            SLIDING_WINDOW_COUNT, [self._key(subject)], [window_ms]
        )
        return int(count)

    async def reset(self, subject: str) -> None:
        """Forget every recorded request for subject."""
        await self._adapter.delete(self._key(subject))
        logger.info("rate limit reset", subject=subject)


def _window_ms(window: Duration) -> int:
    try:
        window_ms = parse_duration(window)
    except (TypeError, ValueError):
        raise InvalidWindow(window) from None
    if window_ms <= 0:
        raise InvalidWindow(window)
    return window_ms


__all__ = ["RateLimiter"]
