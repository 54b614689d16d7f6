"""Serial and parallel dispatcher behavior."""

from __future__ import annotations

import asyncio

import pytest

from castor.backoff import BackoffPolicy
from castor.credentials import CredentialPool
from castor.dispatch import ParallelDispatcher, SerialDispatcher
from castor.errors import DispatcherClosedError, OverloadedError, RateLimitError
from castor.rate_limit import RateGate
from tests.helpers import FakeClock

pytestmark = pytest.mark.unit


def _serial(clock: FakeClock, **policy: float) -> SerialDispatcher:
    gate = RateGate(clock=clock, sleep=clock.sleep)
    return SerialDispatcher(gate, BackoffPolicy(**policy), sleep=clock.sleep)


# =============================================================================
# Serial
# =============================================================================


@pytest.mark.asyncio
async def test_serial_runs_jobs_in_submission_order() -> None:
    clock = FakeClock()
    dispatcher = _serial(clock)
    order: list[int] = []

    def job(n: int):
        async def run(attempt: int) -> int:
            order.append(n)
            return n

        return run

    futures = [dispatcher.enqueue(job(n)) for n in range(5)]
    results = await asyncio.gather(*futures)

    assert results == [0, 1, 2, 3, 4]
    assert order == [0, 1, 2, 3, 4]
    stats = dispatcher.stats()
    assert stats.completed == 5
    assert stats.dispatched == 5
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_serial_rate_limited_job_exhausts_attempts_through_the_gate() -> None:
    clock = FakeClock()
    dispatcher = _serial(clock, max_attempts=3)
    attempts: list[int] = []

    async def always_limited(attempt: int) -> str:
        attempts.append(attempt)
        raise RateLimitError("429 quota exceeded")

    with pytest.raises(RateLimitError) as exc_info:
        await dispatcher.enqueue(always_limited)

    assert attempts == [0, 1, 2]
    assert exc_info.value.attempts == 3
    # Every physical attempt passed through the gate.
    assert dispatcher.gate.dispatched == 3
    assert dispatcher.stats().window_usage == 3
    assert dispatcher.stats().failed == 1
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_serial_overload_backs_off_then_succeeds() -> None:
    clock = FakeClock()
    dispatcher = _serial(clock)
    outcomes: list[object] = [OverloadedError("503", retry_after_s=12.0), "ok"]

    async def flaky(attempt: int) -> str:
        item = outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return str(item)

    assert await dispatcher.enqueue(flaky) == "ok"
    assert 12.0 in clock.sleeps
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_serial_failure_does_not_block_the_queue() -> None:
    clock = FakeClock()
    dispatcher = _serial(clock)

    async def broken(attempt: int) -> str:
        raise ValueError("bad request")

    async def fine(attempt: int) -> str:
        return "fine"

    first = dispatcher.enqueue(broken)
    second = dispatcher.enqueue(fine)

    with pytest.raises(ValueError, match="bad request"):
        await first
    assert await second == "fine"
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_serial_close_fails_queued_jobs() -> None:
    clock = FakeClock()
    dispatcher = _serial(clock)

    async def job(attempt: int) -> str:
        return "never"

    futures = [dispatcher.enqueue(job), dispatcher.enqueue(job)]
    await dispatcher.aclose()

    for fut in futures:
        with pytest.raises(DispatcherClosedError):
            await fut
    with pytest.raises(DispatcherClosedError):
        dispatcher.enqueue(job)


# =============================================================================
# Parallel
# =============================================================================


@pytest.mark.asyncio
async def test_parallel_bounds_concurrency_and_accounts_for_every_job() -> None:
    pool = CredentialPool(["a", "b", "c"])
    dispatcher = ParallelDispatcher(pool)
    running = 0
    peak = 0
    busy_keys: set[str] = set()
    shared_key = False

    def job(n: int):
        async def run(cred) -> int:
            nonlocal running, peak, shared_key
            if cred.secret in busy_keys:
                shared_key = True
            busy_keys.add(cred.secret)
            running += 1
            peak = max(peak, running)
            try:
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                if n % 4 == 0:
                    raise ValueError(f"job {n} failed")
                return n
            finally:
                running -= 1
                busy_keys.discard(cred.secret)

        return run

    futures = [dispatcher.submit(job(n)) for n in range(10)]
    results = await asyncio.gather(*futures, return_exceptions=True)

    stats = dispatcher.stats()
    assert peak <= 3
    assert stats.peak_running <= 3
    assert not shared_key
    assert stats.completed + stats.failed == 10
    assert stats.failed == sum(isinstance(r, ValueError) for r in results)
    assert stats.pending == 0
    assert stats.running == 0
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_parallel_requeues_quota_failures_at_the_front() -> None:
    pool = CredentialPool(["only"])
    dispatcher = ParallelDispatcher(pool, max_requeues=3)
    order: list[str] = []
    outcomes: list[object] = [RateLimitError("429"), "a"]

    async def job_a(cred) -> str:
        order.append("a")
        item = outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return str(item)

    async def job_b(cred) -> str:
        order.append("b")
        return "b"

    fa = dispatcher.submit(job_a)
    fb = dispatcher.submit(job_b)

    assert await fa == "a"
    assert await fb == "b"
    assert order == ["a", "a", "b"]
    assert pool.credentials[0].errors == 1
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_parallel_gives_up_after_max_requeues() -> None:
    pool = CredentialPool(["a", "b"])
    dispatcher = ParallelDispatcher(pool, max_requeues=2)
    calls = 0

    async def always_limited(cred) -> str:
        nonlocal calls
        calls += 1
        raise RateLimitError("429")

    with pytest.raises(RateLimitError) as exc_info:
        await dispatcher.submit(always_limited)

    assert calls == 3
    assert exc_info.value.attempts == 3
    assert dispatcher.stats().failed == 1
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_parallel_other_failures_are_not_requeued() -> None:
    pool = CredentialPool(["a", "b"])
    dispatcher = ParallelDispatcher(pool)
    calls = 0

    async def overloaded(cred) -> str:
        nonlocal calls
        calls += 1
        raise OverloadedError("503")

    with pytest.raises(OverloadedError):
        await dispatcher.submit(overloaded)

    assert calls == 1
    assert not any(c.is_disabled for c in pool.credentials)
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_parallel_close_rejects_new_work() -> None:
    dispatcher = ParallelDispatcher(CredentialPool(["a"]))
    await dispatcher.aclose()

    async def job(cred) -> str:
        return "x"

    with pytest.raises(DispatcherClosedError):
        dispatcher.submit(job)
