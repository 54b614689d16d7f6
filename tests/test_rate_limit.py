"""Sliding window and spacing guarantees of the serial rate gate."""

from __future__ import annotations

import pytest

from castor.rate_limit import RateGate, RateWindow
from tests.helpers import FakeClock

pytestmark = pytest.mark.unit


def _max_in_any_window(stamps: list[float], window_s: float) -> int:
    return max(
        sum(1 for t in stamps if start <= t < start + window_s) for start in stamps
    )


@pytest.mark.asyncio
async def test_window_caps_dispatches_without_spacing() -> None:
    clock = FakeClock()
    gate = RateGate(
        window_s=60.0, max_requests=12, min_interval_s=0, clock=clock, sleep=clock.sleep
    )

    stamps = []
    for _ in range(30):
        await gate.acquire()
        stamps.append(clock.now)

    assert _max_in_any_window(stamps, 60.0) <= 12
    # The 13th dispatch waits for the first to leave the window.
    assert stamps[12] - stamps[0] >= 60.0
    assert gate.dispatched == 30


@pytest.mark.asyncio
async def test_minimum_spacing_between_dispatches() -> None:
    clock = FakeClock()
    gate = RateGate(min_interval_s=5.0, clock=clock, sleep=clock.sleep)

    stamps = []
    for _ in range(15):
        await gate.acquire()
        stamps.append(clock.now)

    gaps = [b - a for a, b in zip(stamps, stamps[1:])]
    assert all(gap >= 5.0 for gap in gaps)
    assert _max_in_any_window(stamps, 60.0) <= 12


@pytest.mark.asyncio
async def test_first_acquire_does_not_wait() -> None:
    clock = FakeClock()
    gate = RateGate(clock=clock, sleep=clock.sleep)

    assert await gate.acquire() == 0.0
    assert await gate.acquire() == 5.0
    assert gate.usage() == 2


@pytest.mark.asyncio
async def test_idle_time_counts_toward_spacing() -> None:
    clock = FakeClock()
    gate = RateGate(min_interval_s=5.0, clock=clock, sleep=clock.sleep)

    await gate.acquire()
    clock.advance(3.0)

    assert await gate.acquire() == pytest.approx(2.0)


def test_window_prunes_expired_stamps() -> None:
    window = RateWindow(window_s=10.0, max_requests=2)
    window.record(0.0)
    window.record(1.0)

    assert window.time_until_slot(5.0) == 5.0
    assert window.usage(10.0) == 1
    assert window.time_until_slot(10.0) == 0.0
    assert window.last == 1.0


@pytest.mark.parametrize("kwargs", [{"window_s": 0}, {"max_requests": 0}])
def test_window_validation(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError, match="RateWindow"):
        RateWindow(**kwargs)
