"""In-memory storage adapter (async only)."""

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from kvcoord.errors import StoreUnavailable
from kvcoord.scripts import AtomicOp

WRONGTYPE = "WRONGTYPE Operation against a key holding the wrong kind of value"


def _encode(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


@dataclass(slots=True)
class _Item:
    value: bytes | dict[str, float]
    expires_at: int | None  # Unix ms


class _MemoryStore:
    """Synchronous Redis-like keyspace with lazy expiry.

    Not thread-safe; callers serialize access.
    """

    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._data: dict[str, _Item] = {}

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _live(self, key: str) -> _Item | None:
        item = self._data.get(key)
        if item is None:
            return None
        if item.expires_at is not None and item.expires_at <= self.now_ms():
            del self._data[key]
            return None
        return item

    def _zset(self, key: str, command: str, *, create: bool = False) -> dict[str, float] | None:
        item = self._live(key)
        if item is None:
            if not create:
                return None
            item = _Item(value={}, expires_at=None)
            self._data[key] = item
        if not isinstance(item.value, dict):
            raise StoreUnavailable(WRONGTYPE, command=command)
        return item.value

    def get(self, key: str) -> bytes | None:
        item = self._live(key)
        if item is None:
            return None
        if not isinstance(item.value, bytes):
            raise StoreUnavailable(WRONGTYPE, command="GET")
        return item.value

    def set(self, key: str, value: bytes | str, ttl: int | None = None) -> None:
        expires_at = self.now_ms() + ttl if ttl is not None else None
        self._data[key] = _Item(value=_encode(value), expires_at=expires_at)

    def exists(self, key: str) -> bool:
        return self._live(key) is not None

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    def pttl(self, key: str) -> int:
        item = self._live(key)
        if item is None:
            return -2
        if item.expires_at is None:
            return -1
        return item.expires_at - self.now_ms()

    def pexpire(self, key: str, ttl: int) -> bool:
        return self.pexpireat(key, self.now_ms() + ttl)

    def pexpireat(self, key: str, when: int) -> bool:
        item = self._live(key)
        if item is None:
            return False
        item.expires_at = when
        # An expiry in the past deletes the key right away
        self._live(key)
        return True

    def zadd(self, key: str, member: str, score: float) -> None:
        zset = self._zset(key, "ZADD", create=True)
        assert zset is not None
        zset[member] = score

    def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        zset = self._zset(key, "ZREMRANGEBYSCORE")
        if zset is None:
            return 0
        doomed = [m for m, s in zset.items() if min_score <= s <= max_score]
        for member in doomed:
            del zset[member]
        if not zset:
            del self._data[key]
        return len(doomed)

    def zcard(self, key: str) -> int:
        zset = self._zset(key, "ZCARD")
        return len(zset) if zset else 0

    def zmembers(self, key: str) -> list[str]:
        zset = self._zset(key, "ZRANGE")
        if not zset:
            return []
        return [m for m, _ in sorted(zset.items(), key=lambda kv: (kv[1], kv[0]))]

    def zfirst(self, key: str) -> tuple[str, float] | None:
        zset = self._zset(key, "ZRANGE")
        if not zset:
            return None
        return min(zset.items(), key=lambda kv: (kv[1], kv[0]))

    def clear(self) -> None:
        self._data.clear()


class AsyncMemoryAdapter:
    """Async in-memory store adapter.

    Keys expire lazily against ``clock`` (unix seconds), so tests can move
    time forward without sleeping.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._store = _MemoryStore(clock)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> bytes | None:
        """Get the value stored at key."""
        async with self._lock:
            return self._store.get(key)

    async def get_with_ttl(self, key: str) -> tuple[bytes | None, int | None]:
        """Get a value and its remaining TTL."""
        async with self._lock:
            value = self._store.get(key)
            if value is None:
                return None, None
            ttl = self._store.pttl(key)
            return value, ttl if ttl >= 0 else None

    async def set(self, key: str, value: bytes | str, ttl: int | None = None) -> None:
        """Store a value."""
        async with self._lock:
            self._store.set(key, value, ttl)

    async def set_if_absent(self, key: str, value: bytes | str, ttl: int) -> bool:
        """Store a value only if key does not exist."""
        async with self._lock:
            if self._store.exists(key):
                return False
            self._store.set(key, value, ttl)
            return True

    async def delete(self, *keys: str) -> int:
        """Delete keys."""
        async with self._lock:
            return self._store.delete(*keys)

    async def increment(self, key: str, amount: int = 1) -> int:
        """Atomically increment an integer value."""
        async with self._lock:
            current = self._store.get(key)
            ttl = self._store.pttl(key)
            try:
                value = int(current or b"0") + amount
            except ValueError:
                raise StoreUnavailable(
                    "ERR value is not an integer or out of range", command="INCRBY"
                ) from None
            self._store.set(key, str(value), ttl if ttl >= 0 else None)
            return value

    async def expire_at(self, key: str, when: int) -> bool:
        """Expire key at an absolute unix ms timestamp."""
        async with self._lock:
            return self._store.pexpireat(key, when)

    async def add_to_sorted_set(self, key: str, member: str, score: float) -> None:
        """Add or rescore a sorted set member."""
        async with self._lock:
            self._store.zadd(key, member, score)

    async def remove_range_by_score(self, key: str, min_score: float, max_score: float) -> int:
        """Remove sorted set members within an inclusive score range."""
        async with self._lock:
            return self._store.zremrangebyscore(key, min_score, max_score)

    async def count_sorted_set(self, key: str) -> int:
        """Count sorted set members."""
        async with self._lock:
            return self._store.zcard(key)

    async def sorted_set_members(self, key: str) -> list[str]:
        """List sorted set members, lowest score first."""
        async with self._lock:
            return self._store.zmembers(key)

    async def run_atomic(self, op: AtomicOp, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Run an atomic operation under the store lock."""
        async with self._lock:
            return op.run_local(self._store, keys, args)

    async def clear(self) -> None:
        """Clear all keys."""
        async with self._lock:
            self._store.clear()

    async def disconnect(self) -> None:
        """Disconnect from the storage backend (no-op for memory)."""
        pass
