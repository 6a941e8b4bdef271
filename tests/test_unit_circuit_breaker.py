import asyncio
import time

import pytest

from marketsync.integrations.base import PlatformRequestError
from marketsync.models.db.enums import CircuitStateName
from marketsync.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from marketsync.utils.circuit_store import InMemoryCircuitStore


async def ok():
    return "ok"


async def unavailable():
    raise PlatformRequestError("down", status_code=503)


async def invalid():
    raise PlatformRequestError("bad payload", status_code=422)


@pytest.mark.asyncio
async def test_threshold_two_full_cycle(breaker, clock, audit):
    """F, F -> open; reject; wait recovery; S -> closed."""
    for _ in range(2):
        with pytest.raises(PlatformRequestError):
            await breaker.execute("shopee", unavailable)
    assert breaker.get_state("shopee").state == CircuitStateName.OPEN

    calls = {"n": 0}

    async def counted():
        calls["n"] += 1
        return "ok"

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.execute("shopee", counted)
    assert calls["n"] == 0
    assert exc_info.value.retry_after_seconds == pytest.approx(30)

    clock.advance(30)
    assert await breaker.execute("shopee", counted) == "ok"
    state = breaker.get_state("shopee")
    assert state.state == CircuitStateName.CLOSED
    assert state.failure_count == 0

    transitions = [(e["from_state"], e["to_state"]) for e in audit.of_type("circuit_state_changed")]
    assert transitions == [("closed", "open"), ("open", "half_open"), ("half_open", "closed")]


@pytest.mark.asyncio
async def test_success_resets_failure_count(breaker):
    with pytest.raises(PlatformRequestError):
        await breaker.execute("tiktok", unavailable)
    assert breaker.get_state("tiktok").failure_count == 1
    await breaker.execute("tiktok", ok)
    assert breaker.get_state("tiktok").failure_count == 0
    with pytest.raises(PlatformRequestError):
        await breaker.execute("tiktok", unavailable)
    assert breaker.get_state("tiktok").state == CircuitStateName.CLOSED


@pytest.mark.asyncio
async def test_non_retryable_failures_do_not_count(breaker):
    for _ in range(5):
        with pytest.raises(PlatformRequestError):
            await breaker.execute("shopee", invalid)
    state = breaker.get_state("shopee")
    assert state.state == CircuitStateName.CLOSED
    assert state.failure_count == 0


@pytest.mark.asyncio
async def test_half_open_failure_reopens(breaker, clock):
    for _ in range(2):
        with pytest.raises(PlatformRequestError):
            await breaker.execute("shopee", unavailable)
    first_opened = breaker.get_state("shopee").opened_at
    clock.advance(31)
    with pytest.raises(PlatformRequestError):
        await breaker.execute("shopee", unavailable)
    state = breaker.get_state("shopee")
    assert state.state == CircuitStateName.OPEN
    assert state.opened_at > first_opened
    with pytest.raises(CircuitOpenError):
        await breaker.execute("shopee", ok)


@pytest.mark.asyncio
async def test_half_open_allows_single_trial(breaker, clock):
    for _ in range(2):
        with pytest.raises(PlatformRequestError):
            await breaker.execute("shopee", unavailable)
    clock.advance(30)

    release = asyncio.Event()

    async def slow_trial():
        await release.wait()
        return "trial"

    trial = asyncio.create_task(breaker.execute("shopee", slow_trial))
    await asyncio.sleep(0)
    assert breaker.get_state("shopee").trial_in_flight is True

    with pytest.raises(CircuitOpenError):
        await breaker.execute("shopee", ok)

    release.set()
    assert await trial == "trial"
    assert breaker.get_state("shopee").state == CircuitStateName.CLOSED


@pytest.mark.asyncio
async def test_non_retryable_trial_failure_releases_slot(breaker, clock):
    for _ in range(2):
        with pytest.raises(PlatformRequestError):
            await breaker.execute("shopee", unavailable)
    clock.advance(30)
    with pytest.raises(PlatformRequestError):
        await breaker.execute("shopee", invalid)
    state = breaker.get_state("shopee")
    assert state.state == CircuitStateName.HALF_OPEN
    assert state.trial_in_flight is False
    assert await breaker.execute("shopee", ok) == "ok"
    assert breaker.get_state("shopee").state == CircuitStateName.CLOSED


@pytest.mark.asyncio
async def test_cancelled_trial_releases_slot(breaker, clock):
    for _ in range(2):
        with pytest.raises(PlatformRequestError):
            await breaker.execute("shopee", unavailable)
    clock.advance(30)

    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(breaker.execute("shopee", hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert breaker.get_state("shopee").trial_in_flight is False


@pytest.mark.asyncio
async def test_keys_are_isolated_and_per_key_overrides(clock, audit):
    cb = CircuitBreaker(
        InMemoryCircuitStore(),
        clock=clock,
        audit=audit,
        failure_threshold=5,
        recovery_timeout_seconds=60,
        per_key={"tiktok": {"failure_threshold": 1}},
    )
    with pytest.raises(PlatformRequestError):
        await cb.execute("tiktok", unavailable)
    with pytest.raises(PlatformRequestError):
        await cb.execute("shopee", unavailable)
    snap = cb.snapshot()
    assert snap["tiktok"]["state"] == "open"
    assert snap["shopee"]["state"] == "closed"
    assert snap["shopee"]["failure_count"] == 1


@pytest.mark.asyncio
async def test_breakers_sharing_a_store_see_one_state(clock, audit):
    store = InMemoryCircuitStore()
    a = CircuitBreaker(store, clock=clock, audit=audit, failure_threshold=2, recovery_timeout_seconds=30, per_key={})
    b = CircuitBreaker(store, clock=clock, audit=audit, failure_threshold=2, recovery_timeout_seconds=30, per_key={})
    with pytest.raises(PlatformRequestError):
        await a.execute("shopee", unavailable)
    with pytest.raises(PlatformRequestError):
        await b.execute("shopee", unavailable)
    with pytest.raises(CircuitOpenError):
        await a.execute("shopee", ok)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate() and loop.time() < deadline:
        await asyncio.sleep(0.01)
    return predicate()


@pytest.mark.asyncio
async def test_trial_granted_to_cancelled_caller_is_released(breaker, clock):
    for _ in range(2):
        with pytest.raises(PlatformRequestError):
            await breaker.execute("shopee", unavailable)
    clock.advance(30)

    task = asyncio.create_task(breaker.execute("shopee", ok))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await wait_until(lambda: not breaker.get_state("shopee").trial_in_flight)
    assert await breaker.execute("shopee", ok) == "ok"
    assert breaker.get_state("shopee").state == CircuitStateName.CLOSED


class SlowStore(InMemoryCircuitStore):
    def get(self, key):
        time.sleep(0.05)
        return super().get(key)


@pytest.mark.asyncio
async def test_store_calls_do_not_block_event_loop(clock, audit):
    cb = CircuitBreaker(SlowStore(), clock=clock, audit=audit, failure_threshold=2, recovery_timeout_seconds=30, per_key={})
    ticks = []

    async def ticker():
        while True:
            ticks.append(1)
            await asyncio.sleep(0.005)

    ticking = asyncio.create_task(ticker())
    try:
        assert await cb.execute("shopee", ok) == "ok"
    finally:
        ticking.cancel()
    # get() is called once to acquire and once to record success
    assert len(ticks) >= 5
