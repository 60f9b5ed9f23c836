import asyncio

import pytest

from herowatch.application.scheduler import DelayedTaskScheduler


@pytest.mark.anyio
async def test_runs_after_delay_without_blocking():
    sched = DelayedTaskScheduler()
    ran = []

    async def job():
        ran.append(1)

    sched.schedule(0.02, job)
    assert ran == []
    assert sched.pending_count == 1
    await sched.join()
    assert ran == [1]
    assert sched.pending_count == 0


@pytest.mark.anyio
async def test_cancel_pending_skips_sleeping_tasks():
    sched = DelayedTaskScheduler()
    ran = []

    async def job():
        ran.append(1)

    sched.schedule(10, job)
    assert sched.cancel_pending() == 1
    await sched.join()
    assert ran == []
    # no new work accepted after cancellation
    assert sched.schedule(0, job) is None


@pytest.mark.anyio
async def test_drain_waits_for_short_and_cancels_long():
    sched = DelayedTaskScheduler()
    finished = []

    async def short():
        await asyncio.sleep(0.01)
        finished.append("short")

    async def long():
        await asyncio.sleep(10)
        finished.append("long")

    sched.schedule(0, short)
    sched.schedule(0, long)
    sched.schedule(5, long)
    await asyncio.sleep(0)  # let the zero-delay tasks start
    await sched.drain(timeout=0.2)
    assert finished == ["short"]
    assert sched.running_count == 0
    assert sched.pending_count == 0


@pytest.mark.anyio
async def test_task_failure_is_contained():
    sched = DelayedTaskScheduler()
    ran = []

    async def bad():
        raise RuntimeError("boom")

    async def good():
        ran.append(1)

    sched.schedule(0, bad)
    sched.schedule(0, good)
    await sched.join()
    assert ran == [1]
