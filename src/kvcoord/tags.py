"""Tag definition and utilities."""

from collections.abc import Callable

from kvcoord.types import Tag, TagLike

_ESCAPE_MAP = {"\\": "\\\\", ":": "\\:"}


def define_tags(
    definitions: dict[str, Callable[..., tuple[str, ...]]],
) -> dict[str, Callable[..., Tag]]:
    """
    Define all tags in a centralized location.

    Example:
        tags = define_tags({
            "user": lambda id: ("user", id),
            "user_posts": lambda user_id: ("user", user_id, "posts"),
        })

        tags["user"]("123")       # Tag: ("user", "123")
        tags["user_posts"]("123") # Tag: ("user", "123", "posts")
    """
    result: dict[str, Callable[..., Tag]] = {}
    for name, fn in definitions.items():

        def make_tag(*args: str, _fn: Callable[..., tuple[str, ...]] = fn) -> Tag:
            parts = _fn(*args)
            return Tag(tuple(str(p) for p in parts))

        result[name] = make_tag
    return result


def to_tag(tag: TagLike) -> Tag:
    """Normalize a plain string or tuple into a Tag."""
    if isinstance(tag, str):
        return Tag((tag,))
    if not tag:
        raise ValueError("Tag must have at least one part")
    return Tag(tuple(str(p) for p in tag))


def serialize_tag(tag: TagLike) -> str:
    """Serialize tag to string for storage keys."""

    def escape(part: str) -> str:
        result = part
        for char, escaped in _ESCAPE_MAP.items():
            result = result.replace(char, escaped)
        return result

    return ":".join(escape(p) for p in to_tag(tag))
