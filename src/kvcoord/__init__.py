"""kvcoord - Caching, locking and rate limiting over a shared key-value store."""

# Adapters (async only)
from kvcoord.adapters import (
    AsyncMemoryAdapter,
    AsyncRedisAdapter,
    AsyncStoreAdapter,
)

# Cache API
from kvcoord.cache import CacheConfig, CacheManager, create_cache
from kvcoord.codecs import BytesCodec, Codec, JsonCodec, StrCodec

# Duration parsing
from kvcoord.duration import parse_duration

# Errors
from kvcoord.errors import (
    InvalidLimit,
    InvalidWindow,
    KVCoordError,
    LoadFailed,
    LockNotOwned,
    LockTimeout,
    StoreUnavailable,
)

# Lock API
from kvcoord.lock import LockHandle, LockManager

# Rate limiter API
from kvcoord.ratelimit import RateLimiter
from kvcoord.scripts import AtomicOp
from kvcoord.tags import define_tags, serialize_tag

# Core types
from kvcoord.types import (
    CacheEntry,
    Duration,
    RateLimitResult,
    Tag,
)

__version__ = "0.1.0"

__all__ = [
    "AsyncMemoryAdapter",
    "AsyncRedisAdapter",
    "AsyncStoreAdapter",
    "AtomicOp",
    "BytesCodec",
    "CacheConfig",
    "CacheEntry",
    "CacheManager",
    "Codec",
    "Duration",
    "InvalidLimit",
    "InvalidWindow",
    "JsonCodec",
    "KVCoordError",
    "LoadFailed",
    "LockHandle",
    "LockManager",
    "LockNotOwned",
    "LockTimeout",
    "RateLimitResult",
    "RateLimiter",
    "StoreUnavailable",
    "StrCodec",
    "Tag",
    "create_cache",
    "define_tags",
    "parse_duration",
    "serialize_tag",
]
