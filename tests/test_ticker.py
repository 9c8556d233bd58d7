"""Tests for lifeos.core.ticker.PeriodicJob."""

from __future__ import annotations

import asyncio

import pytest

from lifeos.core.logging import get_job_context
from lifeos.core.ticker import PeriodicJob

pytestmark = pytest.mark.unit


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        PeriodicJob("bad", 0, lambda: asyncio.sleep(0))


async def test_run_once_reports_success():
    calls = []

    async def tick():
        calls.append(get_job_context())

    job = PeriodicJob("reminder_scan", 60, tick)

    assert await job.run_once() is True
    assert calls == ["reminder_scan"]
    assert job.ticks == 1
    assert get_job_context() is None


async def test_run_once_contains_failures():
    async def tick():
        raise RuntimeError("database unavailable")

    job = PeriodicJob("calendar_sync", 60, tick)

    assert await job.run_once() is False
    assert job.ticks == 1


async def test_loop_runs_immediately_and_repeats():
    ticked = asyncio.Event()
    count = 0

    async def tick():
        nonlocal count
        count += 1
        if count >= 3:
            ticked.set()

    job = PeriodicJob("fast", 0.01, tick)
    job.start()
    await asyncio.wait_for(ticked.wait(), timeout=2)
    await job.stop()

    assert count >= 3
    assert job.running is False


async def test_failing_tick_does_not_stop_the_loop():
    ticked = asyncio.Event()
    count = 0

    async def tick():
        nonlocal count
        count += 1
        if count >= 2:
            ticked.set()
        raise RuntimeError("boom")

    job = PeriodicJob("flaky", 0.01, tick)
    job.start()
    await asyncio.wait_for(ticked.wait(), timeout=2)
    await job.stop()

    assert count >= 2


async def test_ticks_never_overlap():
    active = 0
    max_active = 0
    done = asyncio.Event()
    count = 0

    async def slow_tick():
        nonlocal active, max_active, count
        active += 1
        max_active = max(max_active, active)
        await asyncio.sleep(0.03)
        active -= 1
        count += 1
        if count >= 3:
            done.set()

    job = PeriodicJob("slow", 0.01, slow_tick)
    job.start()
    await asyncio.wait_for(done.wait(), timeout=2)
    await job.stop()

    assert max_active == 1


async def test_start_twice_keeps_one_task():
    job = PeriodicJob("once", 60, lambda: asyncio.sleep(0))
    job.start()
    job.start()

    assert job.running is True
    await job.stop()
    await job.stop()
    assert job.running is False
