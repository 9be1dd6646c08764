"""Tests for the lock manager."""

import asyncio
import time
from collections.abc import Sequence
from typing import Any

import pytest

from kvcoord import (
    AsyncMemoryAdapter,
    LockHandle,
    LockManager,
    LockNotOwned,
    LockTimeout,
    StoreUnavailable,
)
from kvcoord.scripts import COMPARE_AND_DELETE, AtomicOp


class ReleaseDownAdapter(AsyncMemoryAdapter):
    """Store that loses its connection whenever a lock is released."""

    async def run_atomic(self, op: AtomicOp, keys: Sequence[str], args: Sequence[Any]) -> Any:
        if op is COMPARE_AND_DELETE:
            raise StoreUnavailable("down", command="EVALSHA")
        return await super().run_atomic(op, keys, args)


@pytest.fixture
def locks(adapter: AsyncMemoryAdapter) -> LockManager:
    return LockManager(adapter, retry_interval="5ms")


class TestAcquireRelease:
    async def test_acquire_and_release(self, locks: LockManager) -> None:
        handle = await locks.acquire("invoice:42", ttl="10s")
        assert isinstance(handle, LockHandle)
        assert handle.resource == "invoice:42"
        assert handle.ttl == 10_000
        assert await locks.is_locked("invoice:42")
        assert await handle.is_held()

        await handle.release()
        assert not await locks.is_locked("invoice:42")

    async def test_tokens_are_unique(self, locks: LockManager) -> None:
        first = await locks.acquire("a")
        second = await locks.acquire("b")
        assert first.token != second.token
        assert len(first.token) == 32

    async def test_held_lock_times_out(self, locks: LockManager) -> None:
        await locks.acquire("res")
        with pytest.raises(LockTimeout) as exc_info:
            await locks.acquire("res", max_wait=0)
        assert exc_info.value.resource == "res"

    async def test_try_acquire(self, locks: LockManager) -> None:
        handle = await locks.try_acquire("res")
        assert handle is not None
        assert await locks.try_acquire("res") is None

    async def test_timeout_respects_max_wait(self, locks: LockManager) -> None:
        await locks.acquire("res")
        started = time.monotonic()
        with pytest.raises(LockTimeout) as exc_info:
            await locks.acquire("res", max_wait="50ms")
        elapsed = time.monotonic() - started
        assert 0.04 <= elapsed < 1.0
        assert exc_info.value.waited >= 0.04

    async def test_deadline_bounds_wait(self, locks: LockManager) -> None:
        await locks.acquire("res")
        started = time.monotonic()
        with pytest.raises(LockTimeout):
            await locks.acquire("res", max_wait="10s", deadline=started + 0.05)
        assert time.monotonic() - started < 1.0

    async def test_waits_for_release(self, locks: LockManager) -> None:
        holder = await locks.acquire("res")

        async def release_soon() -> None:
            await asyncio.sleep(0.03)
            await holder.release()

        task = asyncio.create_task(release_soon())
        handle = await locks.acquire("res", max_wait="1s")
        await task
        assert handle.token != holder.token
        assert await handle.is_held()

    async def test_acquire_after_expiry(self, locks: LockManager, clock) -> None:
        await locks.acquire("res", ttl="1s")
        clock.advance(1.5)
        handle = await locks.acquire("res", max_wait=0)
        assert await handle.is_held()

    async def test_cancellation_leaves_no_state(self, locks: LockManager) -> None:
        holder = await locks.acquire("res")
        task = asyncio.create_task(locks.acquire("res", max_wait="10s"))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await holder.is_held()


class TestFencing:
    async def test_stale_token_release(self, locks: LockManager, clock) -> None:
        """A holder whose lock expired cannot release the next holder's lock."""
        stale = await locks.acquire("res", ttl="1s")
        clock.advance(2)
        current = await locks.acquire("res", ttl="10s", max_wait=0)

        with pytest.raises(LockNotOwned) as exc_info:
            await stale.release()
        assert exc_info.value.resource == "res"
        assert await current.is_held()
        assert not await stale.is_held()

    async def test_double_release(self, locks: LockManager) -> None:
        handle = await locks.acquire("res")
        await handle.release()
        with pytest.raises(LockNotOwned):
            await handle.release()

    async def test_extend(self, locks: LockManager, clock) -> None:
        handle = await locks.acquire("res", ttl="1s")
        clock.advance(0.9)
        await handle.extend("5s")
        assert handle.ttl == 5000
        clock.advance(2)
        assert await handle.is_held()

    async def test_extend_after_expiry(self, locks: LockManager, clock) -> None:
        handle = await locks.acquire("res", ttl="1s")
        clock.advance(2)
        with pytest.raises(LockNotOwned):
            await handle.extend("5s")

    async def test_stale_extend_does_not_touch_new_holder(
        self, locks: LockManager, adapter: AsyncMemoryAdapter, clock
    ) -> None:
        stale = await locks.acquire("res", ttl="1s")
        clock.advance(2)
        await locks.acquire("res", ttl="3s", max_wait=0)
        with pytest.raises(LockNotOwned):
            await stale.extend("1h")
        _, ttl = await adapter.get_with_ttl("res")
        assert ttl == 3000


class TestConcurrency:
    async def test_single_winner(self, locks: LockManager) -> None:
        """100 concurrent attempts, exactly one succeeds."""
        results = await asyncio.gather(
            *(locks.acquire("res", max_wait=0) for _ in range(100)),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, LockHandle)]
        losers = [r for r in results if not isinstance(r, LockHandle)]
        assert len(winners) == 1
        assert len(losers) == 99
        assert all(isinstance(r, LockTimeout) for r in losers)

    async def test_mutual_exclusion_with_waiting(self, locks: LockManager) -> None:
        holders = 0
        max_holders = 0

        async def worker() -> None:
            nonlocal holders, max_holders
            async with locks.hold("res", max_wait="10s"):
                holders += 1
                max_holders = max(max_holders, holders)
                await asyncio.sleep(0.005)
                holders -= 1

        await asyncio.gather(*(worker() for _ in range(10)))
        assert max_holders == 1
        assert not await locks.is_locked("res")


class TestHold:
    async def test_hold_releases_on_exit(self, locks: LockManager) -> None:
        async with locks.hold("res") as handle:
            assert await handle.is_held()
        assert not await locks.is_locked("res")

    async def test_hold_releases_on_error(self, locks: LockManager) -> None:
        with pytest.raises(RuntimeError):
            async with locks.hold("res"):
                raise RuntimeError("boom")
        assert not await locks.is_locked("res")

    async def test_hold_tolerates_lost_lock(self, locks: LockManager, clock) -> None:
        async with locks.hold("res", ttl="1s"):
            clock.advance(2)
            await locks.acquire("res", max_wait=0)
        assert await locks.is_locked("res")

    async def test_block_error_wins_over_failed_release(self, clock) -> None:
        adapter = ReleaseDownAdapter(clock=clock)
        locks = LockManager(adapter)
        with pytest.raises(RuntimeError, match="boom"):
            async with locks.hold("res"):
                raise RuntimeError("boom")

    async def test_failed_release_surfaces_on_clean_exit(self, clock) -> None:
        adapter = ReleaseDownAdapter(clock=clock)
        locks = LockManager(adapter)
        with pytest.raises(StoreUnavailable):
            async with locks.hold("res"):
                pass


class TestValidation:
    def test_invalid_jitter(self, adapter: AsyncMemoryAdapter) -> None:
        with pytest.raises(ValueError):
            LockManager(adapter, jitter=1.0)

    async def test_invalid_ttl(self, locks: LockManager) -> None:
        with pytest.raises(ValueError):
            await locks.acquire("res", ttl=0)
