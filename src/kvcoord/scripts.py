"""Atomic operations executed server-side as one indivisible step.

Each operation carries two renditions of the same semantics:

- ``lua``: the script the Redis adapter registers and runs with EVALSHA;
- ``run_local()``: a Python version the in-memory adapter runs while holding
  its store lock.

Keeping both side by side lets every operation be unit-tested against the
in-memory store and integration-tested against a real server.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, ClassVar, Protocol


class LocalStore(Protocol):
    """Synchronous store surface available to ``AtomicOp.run_local``."""

    def now_ms(self) -> int: ...

    def get(self, key: str) -> bytes | None: ...

    def delete(self, *keys: str) -> int: ...

    def pttl(self, key: str) -> int: ...

    def pexpire(self, key: str, ttl: int) -> bool: ...

    def zadd(self, key: str, member: str, score: float) -> None: ...

    def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int: ...

    def zcard(self, key: str) -> int: ...

    def zfirst(self, key: str) -> tuple[str, float] | None: ...


def _as_bytes(value: Any) -> bytes:
    """Coerce a script argument the way Redis sees it (as a byte string)."""
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


class AtomicOp(ABC):
    """A named server-side operation."""

    name: ClassVar[str]
    lua: ClassVar[str]

    @abstractmethod
    def run_local(self, store: LocalStore, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Execute against an in-process store. Caller holds the store lock."""

    def __repr__(self) -> str:
        return f"<AtomicOp {self.name}>"


class CompareAndDelete(AtomicOp):
    """Delete KEYS[1] only if its value equals ARGV[1]. Returns 1 or 0."""

    name = "compare_and_delete"
    lua = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

    def run_local(self, store: LocalStore, keys: Sequence[str], args: Sequence[Any]) -> int:
        if store.get(keys[0]) == _as_bytes(args[0]):
            return store.delete(keys[0])
        return 0


class CompareAndExpire(AtomicOp):
    """Reset the TTL of KEYS[1] to ARGV[2] ms only if its value equals ARGV[1]."""

    name = "compare_and_expire"
    lua = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

    def run_local(self, store: LocalStore, keys: Sequence[str], args: Sequence[Any]) -> int:
        if store.get(keys[0]) == _as_bytes(args[0]):
            return int(store.pexpire(keys[0], int(args[1])))
        return 0


# Server clock in unix ms; every host sharing the store sees the same "now"
_LUA_NOW_MS = """
local t = redis.call('TIME')
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
"""


class SlidingWindowAdmit(AtomicOp):
    """Prune, count and conditionally record one request in a sliding window.

    ARGV: window (ms), limit, request id.
    Returns ``[allowed, retry_after_ms, remaining]``.

    ``now`` is read from the store's clock inside the operation. The window
    covers ``(now - window, now]``: an entry recorded exactly ``window`` ms ago
    no longer counts.
    """

    name = "sliding_window_admit"
    lua = (
        _LUA_NOW_MS
        + """
local window = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
local count = redis.call('ZCARD', KEYS[1])
if count < limit then
    redis.call('ZADD', KEYS[1], now, ARGV[3])
    redis.call('PEXPIRE', KEYS[1], window)
    return {1, 0, limit - count - 1}
end
local retry_after = window
local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
if oldest[2] then
    retry_after = tonumber(oldest[2]) + window - now
end
if retry_after < 0 then
    retry_after = 0
end
return {0, retry_after, 0}
"""
    )

    def run_local(self, store: LocalStore, keys: Sequence[str], args: Sequence[Any]) -> list[int]:
        key = keys[0]
        window, limit = int(args[0]), int(args[1])
        member = str(args[2])
        now = store.now_ms()

        store.zremrangebyscore(key, float("-inf"), now - window)
        count = store.zcard(key)
        if count < limit:
            store.zadd(key, member, now)
            store.pexpire(key, window)
            return [1, 0, limit - count - 1]

        oldest = store.zfirst(key)
        retry_after = window if oldest is None else int(oldest[1]) + window - now
        return [0, max(0, retry_after), 0]


class SlidingWindowCount(AtomicOp):
    """Prune a sliding window by the store's clock and count what is left.

    ARGV: window (ms). Returns the number of requests inside the window.
    """

    name = "sliding_window_count"
    lua = (
        _LUA_NOW_MS
        + """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - tonumber(ARGV[1]))
return redis.call('ZCARD', KEYS[1])
"""
    )

    def run_local(self, store: LocalStore, keys: Sequence[str], args: Sequence[Any]) -> int:
        store.zremrangebyscore(keys[0], float("-inf"), store.now_ms() - int(args[0]))
        return store.zcard(keys[0])


class TagIndexAdd(AtomicOp):
    """Add a cache key to a tag index.

    ARGV: member, member expiry (unix ms), now (unix ms), index ttl (ms).
    Members whose entry has already expired are pruned, and the index TTL is
    raised to at least ``index ttl`` but never shortened.
    """

    name = "tag_index_add"
    lua = """
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[1])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[3])
local wanted = tonumber(ARGV[4])
local current = redis.call('PTTL', KEYS[1])
if current < wanted then
    redis.call('PEXPIRE', KEYS[1], ARGV[4])
end
return 1
"""

    def run_local(self, store: LocalStore, keys: Sequence[str], args: Sequence[Any]) -> int:
        key = keys[0]
        store.zadd(key, str(args[0]), float(args[1]))
        store.zremrangebyscore(key, float("-inf"), float(args[2]))
        wanted = int(args[3])
        if store.pttl(key) < wanted:
            store.pexpire(key, wanted)
        return 1


COMPARE_AND_DELETE = CompareAndDelete()
COMPARE_AND_EXPIRE = CompareAndExpire()
SLIDING_WINDOW_ADMIT = SlidingWindowAdmit()
SLIDING_WINDOW_COUNT = SlidingWindowCount()
TAG_INDEX_ADD = TagIndexAdd()

SCRIPTS: dict[str, AtomicOp] = {
    op.name: op
    for op in (
        COMPARE_AND_DELETE,
        COMPARE_AND_EXPIRE,
        SLIDING_WINDOW_ADMIT,
        SLIDING_WINDOW_COUNT,
        TAG_INDEX_ADD,
    )
}


__all__ = [
    "COMPARE_AND_DELETE",
    "COMPARE_AND_EXPIRE",
    "SCRIPTS",
    "SLIDING_WINDOW_ADMIT",
    "SLIDING_WINDOW_COUNT",
    "TAG_INDEX_ADD",
    "AtomicOp",
    "CompareAndDelete",
    "CompareAndExpire",
    "LocalStore",
    "SlidingWindowAdmit",
    "SlidingWindowCount",
    "TagIndexAdd",
]
