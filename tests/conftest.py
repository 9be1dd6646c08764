"""Shared pytest fixtures."""

import pytest

from kvcoord import AsyncMemoryAdapter, define_tags


class FakeClock:
    """Controllable time source returning unix seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def adapter(clock: FakeClock) -> AsyncMemoryAdapter:
    """Create a fresh AsyncMemoryAdapter driven by the fake clock."""
    return AsyncMemoryAdapter(clock=clock)


@pytest.fixture
def tags() -> dict:
    """Create common tag definitions for tests."""
    return define_tags(
        {
            "user": lambda id: ("user", id),
            "post": lambda id: ("post", id),
            "user_posts": lambda user_id: ("user", user_id, "posts"),
        }
    )
