"""
Tests for async_utils module.

Covers run_sync, gather_limited and CancellationToken.
"""

import asyncio

import pytest

from groupshare_sync.core.async_utils import (
    CancellationToken,
    gather_limited,
    run_sync,
)
from groupshare_sync.errors import SyncCancelledError


def _sync_add(a: int, b: int) -> int:
    """Simple sync function for testing."""
    return a + b


async def test_run_sync_calls_function():
    """run_sync delegates to a worker thread with correct args."""
    result = await run_sync(_sync_add, 3, 4)
    assert result == 7


async def test_run_sync_passes_kwargs():
    """run_sync forwards keyword arguments."""
    result = await run_sync(_sync_add, a=10, b=20)
    assert result == 30


async def test_gather_limited_preserves_order():
    """Results come back in input order regardless of completion order."""

    async def delayed(value: int, delay: float) -> int:
        await asyncio.sleep(delay)
        return value

    coros = [delayed(1, 0.03), delayed(2, 0.0), delayed(3, 0.01)]
    assert await gather_limited(coros, 3) == [1, 2, 3]


async def test_gather_limited_empty_list():
    """gather_limited with no coroutines returns an empty list."""
    assert await gather_limited([], 4) == []


async def test_gather_limited_concurrency_bound():
    """No more than max_parallel coroutines run at the same time."""
    active = 0
    peak = 0

    async def worker(i: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return i

    results = await gather_limited([worker(i) for i in range(10)], 3)
    assert results == list(range(10))
    assert peak <= 3


async def test_gather_limited_zero_parallel_still_runs():
    """A non-positive bound is treated as one worker."""

    async def one() -> int:
        return 1

    assert await gather_limited([one(), one()], 0) == [1, 1]


class TestCancellationToken:
    async def test_initially_not_cancelled(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled("anything")

    async def test_cancel_raises_with_step(self):
        token = CancellationToken()
        token.cancel("user pressed stop")
        assert token.cancelled
        with pytest.raises(SyncCancelledError) as excinfo:
            token.raise_if_cancelled("uploading_local")
        assert excinfo.value.operation == "uploading_local"
        assert "user pressed stop" in str(excinfo.value)

    async def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"

    async def test_wait_returns_after_cancel(self):
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)
