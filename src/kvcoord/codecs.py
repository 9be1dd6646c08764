"""Value codecs.

The cache stores opaque bytes; a codec turns application values into bytes
and back.
"""

import json
from typing import Any, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")


@runtime_checkable
class Codec(Protocol[T]):
    """Encode/decode pair used by the cache manager."""

    def encode(self, value: T) -> bytes:
        """Turn a value into bytes for storage."""
        ...

    def decode(self, data: bytes) -> T:
        """Turn stored bytes back into a value."""
        ...


class JsonCodec:
    """JSON codec (UTF-8)."""

    def __init__(self, *, sort_keys: bool = False) -> None:
        self._sort_keys = sort_keys

    def encode(self, value: Any) -> bytes:
        return json.dumps(value, sort_keys=self._sort_keys, separators=(",", ":")).encode(
            "utf-8"
        )

    def decode(self, data: bytes) -> Any:
        return json.loads(data.decode("utf-8"))


class BytesCodec:
    """Identity codec for callers that already hold bytes."""

    def encode(self, value: bytes) -> bytes:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"BytesCodec expects bytes, got {type(value).__name__}")
        return bytes(value)

    def decode(self, data: bytes) -> bytes:
        return data


class StrCodec:
    """Text codec."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding

    def encode(self, value: str) -> bytes:
        return value.encode(self._encoding)

    def decode(self, data: bytes) -> str:
        return data.decode(self._encoding)


__all__ = ["BytesCodec", "Codec", "JsonCodec", "StrCodec"]
