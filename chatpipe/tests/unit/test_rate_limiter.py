from __future__ import annotations

import pytest

from chatpipe.services.rate_limit import RateLimiter
from chatpipe.tests.utils.fakes import FakeCounterStore


@pytest.mark.asyncio
async def test_eleventh_message_is_limited_once_then_silently() -> None:
    store = FakeCounterStore()
    limiter = RateLimiter(store, fail_mode="open", prefix="test")

    decisions = [
        await limiter.check("T1", "conv-1", "+212600000001", limit=10, window_seconds=60)
        for _ in range(12)
    ]

    assert all(not decision.limited for decision in decisions[:10])
    assert decisions[10].limited is True
    assert decisions[10].already_notified is False
    assert decisions[10].current_count == 11
    assert decisions[11].limited is True
    assert decisions[11].already_notified is True


@pytest.mark.asyncio
async def test_window_resets_after_expiry() -> None:
    store = FakeCounterStore()
    limiter = RateLimiter(store, prefix="test")
    for _ in range(3):
        await limiter.check("T1", "conv-1", "s1", limit=2, window_seconds=30)

    store.advance(30)
    fresh = await limiter.check("T1", "conv-1", "s1", limit=2, window_seconds=30)
    over = [await limiter.check("T1", "conv-1", "s1", limit=2, window_seconds=30) for _ in range(2)]

    assert fresh.limited is False
    assert fresh.current_count == 1
    # New window: the notice slot is available again.
    assert over[-1].limited is True
    assert over[-1].already_notified is False


@pytest.mark.asyncio
async def test_non_positive_limit_is_unlimited_and_skips_store() -> None:
    store = FakeCounterStore()
    limiter = RateLimiter(store, prefix="test")

    decision = await limiter.check("T1", "conv-1", "s1", limit=0, window_seconds=60)

    assert decision.limited is False
    assert store.calls == 0


@pytest.mark.asyncio
async def test_senders_have_independent_windows() -> None:
    store = FakeCounterStore()
    limiter = RateLimiter(store, prefix="test")
    await limiter.check("T1", None, "s1", limit=1, window_seconds=60)

    other = await limiter.check("T1", None, "s2", limit=1, window_seconds=60)

    assert other.limited is False
    assert limiter.key_for("T1", None, "s1") == "test:rl:T1:-:s1"


@pytest.mark.asyncio
async def test_store_outage_fails_open() -> None:
    store = FakeCounterStore()
    store.fail = True

    decision = await RateLimiter(store, fail_mode="open", prefix="test").check(
        "T1", "conv-1", "s1", limit=10, window_seconds=60
    )

    assert decision.limited is False
    assert decision.degraded is True


@pytest.mark.asyncio
async def test_store_outage_fail_closed_limits_without_notice() -> None:
    store = FakeCounterStore()
    store.fail = True

    decision = await RateLimiter(store, fail_mode="closed", prefix="test").check(
        "T1", "conv-1", "s1", limit=10, window_seconds=60
    )

    assert decision.limited is True
    assert decision.already_notified is True


@pytest.mark.asyncio
async def test_reset_clears_window_and_notice_slot() -> None:
    store = FakeCounterStore()
    limiter = RateLimiter(store, prefix="test")
    for _ in range(3):
        await limiter.check("T1", "conv-1", "+212600000001", limit=1, window_seconds=60)

    assert await limiter.reset("T1", "conv-1", "+212600000001") is True
    after = await limiter.check("T1", "conv-1", "+212600000001", limit=1, window_seconds=60)
    over = await limiter.check("T1", "conv-1", "+212600000001", limit=1, window_seconds=60)

    assert after.limited is False
    assert after.current_count == 1
    assert over.limited is True
    assert over.already_notified is False
    assert await limiter.reset("T2", "conv-1", "+212600000001") is False
