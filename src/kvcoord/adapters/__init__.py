"""Store adapters for kvcoord (async only)."""

from kvcoord.adapters.base import AsyncStoreAdapter
from kvcoord.adapters.memory import AsyncMemoryAdapter
from kvcoord.adapters.redis import AsyncRedisAdapter

__all__ = [
    "AsyncMemoryAdapter",
    "AsyncRedisAdapter",
    "AsyncStoreAdapter",
]
