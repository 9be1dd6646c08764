"""Distributed mutual-exclusion locks with fencing tokens.

A lock is a single key holding a random token. Acquisition is SET NX with a
TTL; release and extend compare the stored token before acting, so a holder
whose lock already expired can never touch the next holder's lock.
"""

from __future__ import annotations

import asyncio
import random
import secrets
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import structlog

from kvcoord.adapters.base import AsyncStoreAdapter
from kvcoord.duration import parse_duration
from kvcoord.errors import KVCoordError, LockNotOwned, LockTimeout
from kvcoord.scripts import COMPARE_AND_DELETE, COMPARE_AND_EXPIRE
from kvcoord.types import Duration

logger = structlog.get_logger(__name__)


def _positive(duration: Duration, name: str) -> int:
    value = parse_duration(duration)
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def new_token() -> str:
    """128-bit random fencing token."""
    return secrets.token_hex(16)


@dataclass(slots=True)
class LockHandle:
    """Proof of ownership for one acquisition of a lock."""

    resource: str
    token: str
    ttl: int  # ms
    _adapter: AsyncStoreAdapter = field(repr=False, compare=False)

    async def release(self) -> None:
        """Release the lock if this handle still owns it.

        Raises:
            LockNotOwned: the lock expired or is held by someone else
        """
        deleted = await self._adapter.run_atomic(
            COMPARE_AND_DELETE, [self.resource], [self.token]
        )
        if not deleted:
            raise LockNotOwned(self.resource)
        logger.debug("lock released", resource=self.resource)

    async def extend(self, ttl: Duration) -> None:
        """Reset the lock's TTL if this handle still owns it.

        Raises:
            LockNotOwned: the lock expired or is held by someone else
        """
        ttl_ms = _positive(ttl, "ttl")
        extended = await self._adapter.run_atomic(
            COMPARE_AND_EXPIRE, [self.resource], [self.token, ttl_ms]
        )
        if not extended:
            raise LockNotOwned(self.resource)
        self.ttl = ttl_ms

    async def is_held(self) -> bool:
        """Whether the store still maps the resource to this handle's token."""
        current = await self._adapter.get(self.resource)
        return current == self.token.encode("utf-8")


class LockManager:
    """Acquires locks on caller-named resources."""

    def __init__(
        self,
        adapter: AsyncStoreAdapter,
        *,
        default_ttl: Duration = "30s",
        max_wait: Duration = "10s",
        retry_interval: Duration = "100ms",
        jitter: float = 0.2,
    ) -> None:
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be between 0 and 1")
        self._adapter = adapter
        self._default_ttl = _positive(default_ttl, "default_ttl")
        self._max_wait = parse_duration(max_wait)
        self._retry_interval = _positive(retry_interval, "retry_interval")
        self._jitter = jitter

    async def acquire(
        self,
        resource: str,
        *,
        ttl: Duration | None = None,
        max_wait: Duration | None = None,
        retry_interval: Duration | None = None,
        deadline: float | None = None,
    ) -> LockHandle:
        """Acquire a lock, retrying until it is free or the wait budget runs out.

        Args:
            resource: Lock key
            ttl: Lock lifetime (default: manager default_ttl)
            max_wait: How long to keep retrying; 0 makes a single attempt
            retry_interval: Base pause between attempts, jittered
            deadline: Absolute time.monotonic() value that also bounds the wait

        Returns:
            LockHandle bound to a fresh token

        Raises:
            LockTimeout: the lock was still held when the budget ran out
        """
        ttl_ms = _positive(ttl, "ttl") if ttl is not None else self._default_ttl
        wait_s = (parse_duration(max_wait) if max_wait is not None else self._max_wait) / 1000
        interval_s = (
            _positive(retry_interval, "retry_interval")
            if retry_interval is not None
            else self._retry_interval
        ) / 1000

        token = new_token()
        started = time.monotonic()
        stop_at = started + wait_s
        if deadline is not None:
            stop_at = min(stop_at, deadline)

        attempts = 0
        while True:
            attempts += 1
            if await self._adapter.set_if_absent(resource, token, ttl_ms):
                logger.debug("lock acquired", resource=resource, attempts=attempts)
                return LockHandle(resource=resource, token=token, ttl=ttl_ms, _adapter=self._adapter)

            remaining = stop_at - time.monotonic()
            if remaining <= 0:
                waited = time.monotonic() - started
                logger.info(
                    "lock acquisition timed out",
                    resource=resource,
                    attempts=attempts,
                    waited=round(waited, 3),
                )
                raise LockTimeout(resource, waited)

            # Jitter keeps competing callers from retrying in lockstep
            delay = interval_s * (1 + random.uniform(-self._jitter, self._jitter))
            await asyncio.sleep(min(delay, remaining))

    async def try_acquire(self, resource: str, *, ttl: Duration | None = None) -> LockHandle | None:
        """Single acquisition attempt. None if the lock is held."""
        try:
            return await self.acquire(resource, ttl=ttl, max_wait=0)
        except LockTimeout:
            return None

    async def is_locked(self, resource: str) -> bool:
        """Whether any caller currently holds the lock."""
        return await self._adapter.get(resource) is not None

    @asynccontextmanager
    async def hold(
        self,
        resource: str,
        *,
        ttl: Duration | None = None,
        max_wait: Duration | None = None,
        retry_interval: Duration | None = None,
        deadline: float | None = None,
    ) -> AsyncIterator[LockHandle]:
        """Hold a lock for the duration of an ``async with`` block.

        Example:
            async with locks.hold("invoice:42", ttl="10s") as handle:
                ...
        """
        handle = await self.acquire(
            resource,
            ttl=ttl,
            max_wait=max_wait,
            retry_interval=retry_interval,
            deadline=deadline,
        )
        try:
            yield handle
        except BaseException:
            # The block's own error wins over a failed release
            try:
                await handle.release()
            except KVCoordError as exc:
                logger.warning("lock release failed", resource=resource, error=str(exc))
            raise
        try:
            await handle.release()
        except LockNotOwned:
            logger.warning("lock expired before release", resource=resource)


__all__ = ["LockHandle", "LockManager", "new_token"]
