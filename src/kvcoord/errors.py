"""Exception types raised by kvcoord.

Every error carries a stable, machine-readable ``code`` so callers can branch
on the failure kind without string matching.
"""

from __future__ import annotations


class KVCoordError(Exception):
    """Base error for all kvcoord failures."""

    code = "KVCOORD_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class StoreUnavailable(KVCoordError):
    """The backing store could not be reached or rejected a command."""

    code = "STORE_UNAVAILABLE"

    def __init__(self, message: str = "Store unavailable", *, command: str | None = None) -> None:
        self.command = command
        super().__init__(message)


class LoadFailed(KVCoordError):
    """A caller-supplied loader raised while populating the cache."""

    code = "LOAD_FAILED"

    def __init__(self, key: str, message: str | None = None) -> None:
        self.key = key
        super().__init__(message or f"Loader failed for cache key {key!r}")


class LockTimeout(KVCoordError):
    """The wait budget ran out before the lock could be acquired."""

    code = "LOCK_TIMEOUT"

    def __init__(self, resource: str, waited: float) -> None:
        self.resource = resource
        self.waited = waited
        super().__init__(f"Timed out after {waited:.3f}s acquiring lock {resource!r}")


class LockNotOwned(KVCoordError):
    """Release or extend was attempted with a token that no longer owns the lock.

    This is an expected race (the lock expired and possibly changed hands), not
    a backend fault.
    """

    code = "LOCK_NOT_OWNED"

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Lock {resource!r} is not held by this token")


class InvalidLimit(KVCoordError, ValueError):
    """Rate limit must be a positive integer."""

    code = "INVALID_LIMIT"

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"limit must be > 0, got {limit!r}")


class InvalidWindow(KVCoordError, ValueError):
    """Rate limit window must be a positive duration."""

    code = "INVALID_WINDOW"

    def __init__(self, window: object) -> None:
        self.window = window
        super().__init__(f"window must be > 0, got {window!r}")


__all__ = [
    "InvalidLimit",
    "InvalidWindow",
    "KVCoordError",
    "LoadFailed",
    "LockNotOwned",
    "LockTimeout",
    "StoreUnavailable",
]
