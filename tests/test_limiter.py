"""Tests for the fixed-window rate limiter."""

import asyncio
from typing import Dict, List, Optional

import pytest

from edge_gateway.limiter import (
    InMemoryWindowStore,
    RateLimiter,
    RateLimitExceeded,
    WindowEntry,
    WindowStore,
)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class SlowStore(WindowStore):
    """A shared-cache style store where every read suspends."""

    def __init__(self) -> None:
        self.entries: Dict[str, WindowEntry] = {}
        self.calls: List[str] = []

    async def get(self, identity: str) -> Optional[WindowEntry]:
        self.calls.append("get")
        entry = self.entries.get(identity)
        snapshot = None
        if entry is not None:
            snapshot = WindowEntry(count=entry.count, reset_at=entry.reset_at)
        await asyncio.sleep(0)
        return snapshot

    async def set(self, identity: str, entry: WindowEntry) -> None:
        self.calls.append("set")
        self.entries[identity] = WindowEntry(count=entry.count, reset_at=entry.reset_at)


async def _admitted(limiter: RateLimiter, identity: str, attempts: int) -> int:
    admitted = 0
    for _ in range(attempts):
        try:
            await limiter.check(identity)
        except RateLimitExceeded:
            continue
        admitted += 1
    return admitted


@pytest.mark.asyncio
async def test_allows_requests_within_limit() -> None:
    """Requests under the limit should succeed."""
    limiter = RateLimiter(max_requests=3)
    for _ in range(3):
        await limiter.check("alice")


@pytest.mark.asyncio
async def test_rejects_over_limit() -> None:
    """Exceeding the request limit raises RateLimitExceeded with a 429."""
    clock = FakeClock()
    limiter = RateLimiter(max_requests=2, window_seconds=60.0, clock=clock)
    await limiter.check("alice")
    clock.now += 15
    await limiter.check("alice")

    with pytest.raises(RateLimitExceeded, match="Limit of 2 requests") as info:
        await limiter.check("alice")

    assert info.value.status_code == 429
    assert info.value.error == "Rate limit exceeded"
    assert info.value.retry_after == pytest.approx(45.0)


@pytest.mark.asyncio
async def test_at_most_max_admissions_within_one_window() -> None:
    """Sequential calls inside one window never exceed the limit."""
    clock = FakeClock()
    limiter = RateLimiter(max_requests=10, window_seconds=60.0, clock=clock)

    admitted = 0
    for _ in range(25):
        try:
            await limiter.check("alice")
            admitted += 1
        except RateLimitExceeded:
            pass
        clock.now += 2

    assert admitted == 10


@pytest.mark.asyncio
async def test_separate_identities_have_independent_limits() -> None:
    """Different identities have independent counters."""
    limiter = RateLimiter(max_requests=1)
    await limiter.check("alice")
    await limiter.check("bob")  # Should not raise


@pytest.mark.asyncio
async def test_anonymous_requests_bypass_limiter() -> None:
    """No identity means no metering and no stored entry."""
    store = InMemoryWindowStore()
    limiter = RateLimiter(max_requests=1, store=store)
    for _ in range(5):
        await limiter.check(None)
        await limiter.check("")
    assert len(store) == 0


@pytest.mark.asyncio
async def test_window_resets() -> None:
    """After the window expires, the counter restarts from zero."""
    clock = FakeClock(1000.0)
    store = InMemoryWindowStore()
    limiter = RateLimiter(max_requests=1, window_seconds=60.0, store=store, clock=clock)
    await limiter.check("alice")

    with pytest.raises(RateLimitExceeded):
        await limiter.check("alice")

    clock.now = 1061.0
    await limiter.check("alice")  # Should succeed after window reset

    entry = await store.get("alice")
    assert entry is not None
    assert entry.count == 1
    assert entry.reset_at == 1121.0


@pytest.mark.asyncio
async def test_window_boundary_is_exclusive() -> None:
    """The window only rolls over once the clock is past reset_at."""
    clock = FakeClock(0.0)
    limiter = RateLimiter(max_requests=1, window_seconds=60.0, clock=clock)
    await limiter.check("alice")

    clock.now = 60.0
    with pytest.raises(RateLimitExceeded):
        await limiter.check("alice")

    clock.now = 60.001
    await limiter.check("alice")


@pytest.mark.asyncio
async def test_boundary_straddle_admits_nearly_twice_the_limit() -> None:
    """Fixed windows let a burst straddling the boundary exceed the limit."""
    clock = FakeClock(0.0)
    limiter = RateLimiter(max_requests=3, window_seconds=60.0, clock=clock)

    await limiter.check("alice")  # opens the window, reset_at = 60

    clock.now = 59.5
    late = await _admitted(limiter, "alice", 5)
    clock.now = 60.5
    early = await _admitted(limiter, "alice", 5)

    # One second of wall time, 2 * max - 1 admissions.
    assert late == 2
    assert early == 3
    assert late + early > limiter.max_requests


@pytest.mark.asyncio
async def test_injected_store_is_used() -> None:
    """The limiter reads and writes through the injected store."""
    store = SlowStore()
    limiter = RateLimiter(max_requests=2, store=store)
    await limiter.check("alice")

    assert store.calls == ["get", "set"]
    assert store.entries["alice"].count == 1


@pytest.mark.asyncio
async def test_rejected_request_does_not_write() -> None:
    """A denied request leaves the stored count alone."""
    store = SlowStore()
    limiter = RateLimiter(max_requests=1, store=store)
    await limiter.check("alice")
    with pytest.raises(RateLimitExceeded):
        await limiter.check("alice")

    assert store.calls == ["get", "set", "get"]
    assert store.entries["alice"].count == 1


@pytest.mark.asyncio
async def test_concurrent_checks_can_overshoot_with_suspending_store() -> None:
    """Known race: concurrent read-modify-write on a shared store loses updates.

    Both checks read count=0 before either writes, so both are admitted even
    though the limit is 1. The limiter does not lock.
    """
    store = SlowStore()
    limiter = RateLimiter(max_requests=1, store=store)

    results = await asyncio.gather(
        limiter.check("alice"), limiter.check("alice"), return_exceptions=True
    )

    admitted = [r for r in results if r is None]
    assert len(admitted) >= 1
    if len(admitted) == 2:
        # Lost update: two admissions, one recorded.
        assert store.entries["alice"].count == 1


@pytest.mark.asyncio
async def test_in_memory_store_is_exact_under_gather() -> None:
    """The in-memory store never suspends, so concurrent checks serialize."""
    limiter = RateLimiter(max_requests=1)
    results = await asyncio.gather(
        limiter.check("alice"), limiter.check("alice"), return_exceptions=True
    )
    assert sum(1 for r in results if r is None) == 1
    assert sum(1 for r in results if isinstance(r, RateLimitExceeded)) == 1
