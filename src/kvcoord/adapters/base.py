"""Base adapter protocol for the backing key-value store."""

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from kvcoord.scripts import AtomicOp


@runtime_checkable
class AsyncStoreAdapter(Protocol):
    """Async store adapter interface.

    TTLs are milliseconds, timestamps are unix milliseconds. Adapters raise
    ``StoreUnavailable`` for transport and backend failures.
    """

    async def get(self, key: str) -> bytes | None:
        """Get the value stored at key."""
        ...

    async def get_with_ttl(self, key: str) -> tuple[bytes | None, int | None]:
        """Get a value and its remaining TTL (None if it never expires)."""
        ...

    async def set(self, key: str, value: bytes | str, ttl: int | None = None) -> None:
        """Store a value, optionally expiring after ttl ms."""
        ...

    async def set_if_absent(self, key: str, value: bytes | str, ttl: int) -> bool:
        """Store a value only if key does not exist. True if stored."""
        ...

    async def delete(self, *keys: str) -> int:
        """Delete keys in one batch. Returns how many existed."""
        ...

    async def increment(self, key: str, amount: int = 1) -> int:
        """Atomically add amount to an integer value and return the result."""
        ...

    async def expire_at(self, key: str, when: int) -> bool:
        """Expire key at an absolute unix ms timestamp. False if key is missing."""
        ...

    async def add_to_sorted_set(self, key: str, member: str, score: float) -> None:
        """Add or rescore a member of a sorted set."""
        ...

    async def remove_range_by_score(self, key: str, min_score: float, max_score: float) -> int:
        """Remove members with min_score <= score <= max_score."""
        ...

    async def count_sorted_set(self, key: str) -> int:
        """Number of members in a sorted set."""
        ...

    async def sorted_set_members(self, key: str) -> list[str]:
        """All members of a sorted set, lowest score first."""
        ...

    async def run_atomic(self, op: AtomicOp, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Run an atomic operation as one indivisible step."""
        ...

    async def clear(self) -> None:
        """Remove every key owned by this adapter."""
        ...

    async def disconnect(self) -> None:
        """Disconnect from the storage backend."""
        ...
