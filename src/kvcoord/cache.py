"""Cache manager - cache-aside reads over the shared store.

This module provides:
- get(), get_entry(): Single reads, a miss is None
- get_or_load(): Cache-aside with probabilistic early refresh and a refresh lock
- set(): Unconditional write with tag indexing
- invalidate(), invalidate_by_tag(): Removal by key or by tag

Nothing is coordinated in-process: concurrent callers (in any process) meet
at the refresh lock key in the store.
"""

from __future__ import annotations

import asyncio
import random
import secrets
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, cast

import structlog

from kvcoord.adapters.base import AsyncStoreAdapter
from kvcoord.codecs import Codec, JsonCodec
from kvcoord.duration import parse_duration, to_seconds
from kvcoord.errors import LoadFailed, StoreUnavailable
from kvcoord.scripts import COMPARE_AND_DELETE, TAG_INDEX_ADD
from kvcoord.tags import serialize_tag, to_tag
from kvcoord.types import CacheEntry, Duration, Tag, TagLike

T = TypeVar("T")

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Cache manager settings.

    Args:
        default_ttl: TTL used when a write does not pass one
        refresh_threshold: Remaining TTL below which hits may refresh early
            (0 disables early refresh)
        refresh_lock_ttl: Lifetime of the refresh lock
        wait_attempts: Cache polls made by a caller that lost the refresh lock
            on a miss before it loads on its own
        wait_interval: Pause between those polls
        tag_prefix: Namespace of the tag index keys
        refresh_prefix: Namespace of the refresh lock keys

    Tag indices and refresh locks share the keyspace with cached entries, so
    cache keys must not start with ``tag_prefix`` or ``refresh_prefix``. Rate
    limiter windows live under the limiter's own ``key_prefix``.
    """

    default_ttl: Duration = "5m"
    refresh_threshold: Duration = "10s"
    refresh_lock_ttl: Duration = "30s"
    wait_attempts: int = 20
    wait_interval: Duration = "50ms"
    tag_prefix: str = "tag:"
    refresh_prefix: str = "refresh:"

    def __post_init__(self) -> None:
        if not self.tag_prefix or not self.refresh_prefix:
            raise ValueError("key prefixes must be non-empty")
        if self.tag_prefix == self.refresh_prefix:
            raise ValueError("tag_prefix and refresh_prefix must differ")
        if parse_duration(self.default_ttl) <= 0:
            raise ValueError("default_ttl must be > 0")
        if parse_duration(self.refresh_lock_ttl) <= 0:
            raise ValueError("refresh_lock_ttl must be > 0")
        parse_duration(self.refresh_threshold)
        parse_duration(self.wait_interval)
        if self.wait_attempts < 0:
            raise ValueError("wait_attempts must be >= 0")


class CacheManager(Generic[T]):
    """Cache-aside reads and writes with tag invalidation.

    Keys under ``config.tag_prefix`` and ``config.refresh_prefix`` are reserved
    for the manager's own bookkeeping.
    """

    def __init__(
        self,
        adapter: AsyncStoreAdapter,
        *,
        codec: Codec[T] | None = None,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.time,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._adapter = adapter
        self._codec: Codec[T] = codec if codec is not None else cast(Codec[T], JsonCodec())
        self._config = config or CacheConfig()
        self._clock = clock
        self._random = rand

        self._default_ttl = parse_duration(self._config.default_ttl)
        self._refresh_threshold = parse_duration(self._config.refresh_threshold)
        self._refresh_lock_ttl = parse_duration(self._config.refresh_lock_ttl)
        self._wait_interval = to_seconds(self._config.wait_interval)

    @property
    def config(self) -> CacheConfig:
        return self._config

    async def get(self, key: str) -> T | None:
        """Read a cached value, None on a miss."""
        data = await self._adapter.get(key)
        if data is None:
            return None
        return self._codec.decode(data)

    async def get_entry(self, key: str) -> CacheEntry[T] | None:
        """Read a cached value with its remaining TTL.

        Unlike get(), a cached value that decodes to None is still reported
        as an entry.
        """
        data, ttl = await self._adapter.get_with_ttl(key)
        if data is None:
            return None
        return CacheEntry(key=key, value=self._codec.decode(data), ttl=ttl)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        *,
        ttl: Duration | None = None,
        tags: Iterable[TagLike] = (),
    ) -> T:
        """Fetch with caching and thundering-herd protection.

        Args:
            key: Cache key
            loader: Async function producing the fresh value
            ttl: Time to live (default: config default_ttl)
            tags: Tags for invalidation

        Returns:
            Cached or freshly loaded value

        Raises:
            LoadFailed: loader raised; the cache is left untouched
            StoreUnavailable: the store could not be reached
        """
        tag_list = list(tags)
        data, remaining = await self._adapter.get_with_ttl(key)
        if data is not None and not self._should_refresh(remaining):
            return self._codec.decode(data)

        lock_key = self._config.refresh_prefix + key
        token = secrets.token_hex(16)
        if await self._adapter.set_if_absent(lock_key, token, self._refresh_lock_ttl):
            try:
                if data is None:
                    # Another caller may have filled the key since our read
                    data = await self._adapter.get(key)
                    if data is not None:
                        return self._codec.decode(data)
                return await self._load(key, loader, ttl, tag_list)
            finally:
                await self._release_refresh_lock(lock_key, token)

        # Someone else is refreshing
        if data is not None:
            logger.debug("serving stale value during refresh", key=key)
            return self._codec.decode(data)

        for _ in range(self._config.wait_attempts):
            await asyncio.sleep(self._wait_interval)
            data = await self._adapter.get(key)
            if data is not None:
                return self._codec.decode(data)

        logger.info(
            "refresh wait exhausted, loading without lock",
            key=key,
            attempts=self._config.wait_attempts,
        )
        return await self._load(key, loader, ttl, tag_list)

    async def set(
        self,
        key: str,
        value: T,
        *,
        ttl: Duration | None = None,
        tags: Iterable[TagLike] = (),
    ) -> list[Tag]:
        """Write a value and index it under each tag.

        The value write is authoritative. Tag index updates are best-effort:
        failures are logged and the tags that could not be indexed are
        returned (empty list on full success).
        """
        ttl_ms = self._ttl(ttl)
        await self._adapter.set(key, self._codec.encode(value), ttl_ms)

        now = int(self._clock() * 1000)
        failed: list[Tag] = []
        for tag in dict.fromkeys(to_tag(t) for t in tags):
            try:
                await self._adapter.run_atomic(
                    TAG_INDEX_ADD,
                    [self._tag_key(tag)],
                    [key, now + ttl_ms, now, ttl_ms],
                )
            except StoreUnavailable as exc:
                logger.warning(
                    "tag index update failed",
                    key=key,
                    tag=serialize_tag(tag),
                    error=str(exc),
                )
                failed.append(tag)
        return failed

    async def invalidate(self, key: str) -> bool:
        """Delete one entry. Tag indices are left to prune lazily."""
        return await self._adapter.delete(key) > 0

    async def invalidate_by_tag(self, tag: TagLike) -> int:
        """Delete every entry indexed under tag, then the index itself.

        Returns:
            Number of entries that were actually removed
        """
        tag_key = self._tag_key(to_tag(tag))
        members = await self._adapter.sorted_set_members(tag_key)
        removed = await self._adapter.delete(*members) if members else 0
        await self._adapter.delete(tag_key)
        logger.debug(
            "invalidated tag",
            tag=serialize_tag(tag),
            indexed=len(members),
            removed=removed,
        )
        return removed

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _ttl(self, ttl: Duration | None) -> int:
        ttl_ms = parse_duration(ttl) if ttl is not None else self._default_ttl
        if ttl_ms <= 0:
            raise ValueError("ttl must be > 0")
        return ttl_ms

    def _tag_key(self, tag: Tag) -> str:
        return self._config.tag_prefix + serialize_tag(tag)

    def _should_refresh(self, remaining: int | None) -> bool:
        """Decide whether a hit near expiry should refresh early."""
        if remaining is None or self._refresh_threshold <= 0:
            return False
        if remaining > self._refresh_threshold:
            return False
        probability = 1 - remaining / self._refresh_threshold
        return self._random() < probability

    async def _load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        ttl: Duration | None,
        tags: list[TagLike],
    ) -> T:
        try:
            value = await loader()
        except Exception as exc:
            logger.warning("loader failed", key=key, error=repr(exc))
            raise LoadFailed(key) from exc
        await self.set(key, value, ttl=ttl, tags=tags)
        return value

    async def _release_refresh_lock(self, lock_key: str, token: str) -> None:
        # The lock expires on its own if this fails
        try:
            await self._adapter.run_atomic(COMPARE_AND_DELETE, [lock_key], [token])
        except StoreUnavailable as exc:
            logger.warning("refresh lock release failed", lock=lock_key, error=str(exc))


def create_cache(
    *,
    adapter: AsyncStoreAdapter,
    codec: Codec[Any] | None = None,
    default_ttl: Duration = "5m",
    refresh_threshold: Duration = "10s",
    refresh_lock_ttl: Duration = "30s",
    wait_attempts: int = 20,
    wait_interval: Duration = "50ms",
    tag_prefix: str = "tag:",
    refresh_prefix: str = "refresh:",
) -> CacheManager[Any]:
    """Create a cache manager.

    Args:
        adapter: Store adapter
        codec: Value codec (default: JSON)
        default_ttl: Default time to live
        refresh_threshold: Remaining TTL that makes hits eligible for early refresh
        refresh_lock_ttl: Lifetime of the refresh lock
        wait_attempts: Polls made while another caller loads a missing key
        wait_interval: Pause between polls
        tag_prefix: Namespace of the tag index keys
        refresh_prefix: Namespace of the refresh lock keys

    Returns:
        CacheManager instance
    """
    return CacheManager(
        adapter,
        codec=codec,
        config=CacheConfig(
            default_ttl=default_ttl,
            refresh_threshold=refresh_threshold,
            refresh_lock_ttl=refresh_lock_ttl,
            wait_attempts=wait_attempts,
            wait_interval=wait_interval,
            tag_prefix=tag_prefix,
            refresh_prefix=refresh_prefix,
        ),
    )


__all__ = ["CacheConfig", "CacheManager", "create_cache"]
