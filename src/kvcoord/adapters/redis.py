"""Redis storage adapter."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import structlog
from redis.exceptions import RedisError

from kvcoord.errors import StoreUnavailable
from kvcoord.scripts import AtomicOp

logger = structlog.get_logger(__name__)


@contextmanager
def _translate_errors(command: str) -> Iterator[None]:
    """Surface driver failures as StoreUnavailable."""
    try:
        yield
    except RedisError as exc:
        logger.warning("store command failed", command=command, error=str(exc))
        raise StoreUnavailable(f"Redis {command} failed: {exc}", command=command) from exc


def _decode(data: bytes | str) -> str:
    return data.decode("utf-8") if isinstance(data, bytes) else data


class AsyncRedisAdapter:
    """Async Redis store adapter.

    Every key is namespaced as ``{prefix}:{key}``. Sorted set members are
    stored as given.
    """

    def __init__(
        self,
        client: Any,  # redis.asyncio.Redis
        *,
        prefix: str = "kvcoord",
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._scripts: dict[str, Any] = {}

    def _key(self, key: str) -> str:
        """Generate the full Redis key."""
        return f"{self._prefix}:{key}"

    def _script(self, op: AtomicOp) -> Any:
        script = self._scripts.get(op.name)
        if script is None:
            # EVALSHA with automatic script load on NOSCRIPT
            script = self._client.register_script(op.lua)
            self._scripts[op.name] = script
        return script

    async def get(self, key: str) -> bytes | None:
        """Get the value stored at key."""
        with _translate_errors("GET"):
            return await self._client.get(self._key(key))

    async def get_with_ttl(self, key: str) -> tuple[bytes | None, int | None]:
        """Get a value and its remaining TTL in one round trip."""
        full_key = self._key(key)
        with _translate_errors("GET+PTTL"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.get(full_key)
                pipe.pttl(full_key)
                value, ttl = await pipe.execute()
        if value is None:
            return None, None
        return value, ttl if ttl >= 0 else None

    async def set(self, key: str, value: bytes | str, ttl: int | None = None) -> None:
        """Store a value with optional expiration."""
        with _translate_errors("SET"):
            await self._client.set(self._key(key), value, px=ttl)

    async def set_if_absent(self, key: str, value: bytes | str, ttl: int) -> bool:
        """SET NX PX."""
        with _translate_errors("SET NX"):
            return bool(await self._client.set(self._key(key), value, px=ttl, nx=True))

    async def delete(self, *keys: str) -> int:
        """Delete keys in one command."""
        if not keys:
            return 0
        with _translate_errors("DEL"):
            return int(await self._client.delete(*(self._key(k) for k in keys)))

    async def increment(self, key: str, amount: int = 1) -> int:
        """INCRBY."""
        with _translate_errors("INCRBY"):
            return int(await self._client.incrby(self._key(key), amount))

    async def expire_at(self, key: str, when: int) -> bool:
        """PEXPIREAT."""
        with _translate_errors("PEXPIREAT"):
            return bool(await self._client.pexpireat(self._key(key), when))

    async def add_to_sorted_set(self, key: str, member: str, score: float) -> None:
        """ZADD."""
        with _translate_errors("ZADD"):
            await self._client.zadd(self._key(key), {member: score})

    async def remove_range_by_score(self, key: str, min_score: float, max_score: float) -> int:
        """ZREMRANGEBYSCORE (inclusive)."""
        with _translate_errors("ZREMRANGEBYSCORE"):
            return int(
                await self._client.zremrangebyscore(self._key(key), min_score, max_score)
            )

    async def count_sorted_set(self, key: str) -> int:
        """ZCARD."""
        with _translate_errors("ZCARD"):
            return int(await self._client.zcard(self._key(key)))

    async def sorted_set_members(self, key: str) -> list[str]:
        """ZRANGE 0 -1."""
        with _translate_errors("ZRANGE"):
            members = await self._client.zrange(self._key(key), 0, -1)
        return [_decode(m) for m in members]

    async def run_atomic(self, op: AtomicOp, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Run the op's Lua script."""
        script = self._script(op)
        with _translate_errors(f"EVALSHA {op.name}"):
            return await script(keys=[self._key(k) for k in keys], args=list(args))

    async def clear(self) -> None:
        """Delete every key under this adapter's prefix."""
        cursor: int = 0
        pattern = f"{self._prefix}:*"
        with _translate_errors("SCAN"):
            while True:
                result = await self._client.scan(cursor, match=pattern, count=100)
                cursor = result[0]
                keys = result[1]
                if keys:
                    await self._client.delete(*keys)
                if cursor == 0:
                    break

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        await self._client.aclose()
