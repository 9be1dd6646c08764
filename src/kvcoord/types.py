"""Core types for kvcoord."""

from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Generic,
    NewType,
    TypeVar,
)

T = TypeVar("T")

# Branded tag type - compile-time enforcement only
if TYPE_CHECKING:
    Tag = NewType("Tag", tuple[str, ...])
else:
    Tag = tuple

# A plain string tag is treated as a one-part tuple
TagLike = str | tuple[str, ...]


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached value as read back from the store."""

    key: str
    value: T
    ttl: int | None  # Remaining ms, None when the key never expires


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    """Outcome of a single rate limit admission check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # ms, 0 when allowed

    @property
    def retry_after_seconds(self) -> float:
        return self.retry_after / 1000


# Duration type alias
Duration = str | int  # "30s", "5m", "2h", "1d" or milliseconds
