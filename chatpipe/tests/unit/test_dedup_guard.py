from __future__ import annotations

import pytest

from chatpipe.core.errors import EventInFlightError
from chatpipe.services.dedup import DedupGuard
from chatpipe.services.telemetry import counters_snapshot
from chatpipe.tests.utils.fakes import FakeCounterStore


def _guard(store: FakeCounterStore, *, fail_mode: str = "open") -> DedupGuard:
    return DedupGuard(store, ttl_s=86400, fail_mode=fail_mode, prefix="test")


@pytest.mark.asyncio
async def test_first_delivery_is_accepted_and_redelivery_is_duplicate() -> None:
    store = FakeCounterStore()
    guard = _guard(store)

    first = await guard.accept("T1", "wamid-1", "corr-a")
    again = await guard.accept("T1", "wamid-1", "corr-b")

    assert first.duplicate is False
    assert first.resumed is False
    assert again.duplicate is True


@pytest.mark.asyncio
async def test_queue_retry_of_same_job_resumes() -> None:
    store = FakeCounterStore()
    guard = _guard(store)

    first = await guard.accept("T1", "wamid-1", "corr-a")
    await guard.release(first)
    retry = await guard.accept("T1", "wamid-1", "corr-a")

    assert retry.duplicate is False
    assert retry.resumed is True


@pytest.mark.asyncio
async def test_dedup_key_is_scoped_per_tenant() -> None:
    store = FakeCounterStore()
    guard = _guard(store)

    await guard.accept("T1", "wamid-1", "corr-a")
    other_tenant = await guard.accept("T2", "wamid-1", "corr-b")

    assert other_tenant.duplicate is False
    assert guard.key_for("T1", "wamid-1") == "test:dedup:T1:wamid-1"


@pytest.mark.asyncio
async def test_record_expires_after_ttl() -> None:
    store = FakeCounterStore()
    guard = _guard(store)

    await guard.accept("T1", "wamid-1", "corr-a")
    store.advance(86400)
    late = await guard.accept("T1", "wamid-1", "corr-b")

    assert late.duplicate is False


@pytest.mark.asyncio
async def test_missing_provider_id_is_not_deduplicated() -> None:
    store = FakeCounterStore()
    guard = _guard(store)

    decision = await guard.accept("T1", "", "corr-a")

    assert decision.duplicate is False
    assert store.calls == 0


@pytest.mark.asyncio
async def test_store_outage_fails_open_by_default() -> None:
    store = FakeCounterStore()
    store.fail = True

    decision = await _guard(store).accept("T1", "wamid-1", "corr-a")

    assert decision.duplicate is False
    assert decision.degraded is True
    assert counters_snapshot()["guard_degraded_total.dedup"] == 1


@pytest.mark.asyncio
async def test_store_outage_fail_closed_drops() -> None:
    store = FakeCounterStore()
    store.fail = True

    decision = await _guard(store, fail_mode="closed").accept("T1", "wamid-1", "corr-a")

    assert decision.duplicate is True
    assert decision.degraded is True


@pytest.mark.asyncio
async def test_concurrent_execution_of_same_job_is_refused() -> None:
    store = FakeCounterStore()
    guard = _guard(store)

    first = await guard.accept("T1", "wamid-1", "corr-a")
    with pytest.raises(EventInFlightError):
        await guard.accept("T1", "wamid-1", "corr-a")

    assert first.lease_key == "test:dedup:T1:wamid-1:lease"
    assert counters_snapshot()["dedup_in_flight_total"] == 1


@pytest.mark.asyncio
async def test_release_lets_the_next_attempt_resume() -> None:
    store = FakeCounterStore()
    guard = _guard(store)

    first = await guard.accept("T1", "wamid-1", "corr-a")
    await guard.release(first)
    second = await guard.accept("T1", "wamid-1", "corr-a")

    assert second.resumed is True
    assert second.lease_token != first.lease_token


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over() -> None:
    store = FakeCounterStore()
    guard = DedupGuard(store, ttl_s=86400, lease_ttl_s=150, fail_mode="open", prefix="test")

    await guard.accept("T1", "wamid-1", "corr-a")
    store.advance(150)
    takeover = await guard.accept("T1", "wamid-1", "corr-a")

    assert takeover.resumed is True


@pytest.mark.asyncio
async def test_release_failure_is_logged_not_raised() -> None:
    store = FakeCounterStore()
    guard = _guard(store)
    decision = await guard.accept("T1", "wamid-1", "corr-a")
    store.fail = True

    await guard.release(decision)

    assert counters_snapshot()["dedup_lease_release_failed_total"] == 1
