import asyncio

import pytest

from featureflex.core.scheduler import AsyncioScheduler, ManualScheduler, Scheduler


@pytest.mark.asyncio
async def test_manual_scheduler_runs_callbacks_in_due_order() -> None:
    scheduler = ManualScheduler(start=0.0)
    fired: list[tuple[str, float]] = []

    scheduler.call_later(0.3, lambda: fired.append(("late", scheduler.time())))
    scheduler.call_later(0.1, lambda: fired.append(("early", scheduler.time())))

    await scheduler.advance(0.2)
    assert fired == [("early", 0.1)]
    assert scheduler.time() == pytest.approx(0.2)

    await scheduler.advance(0.2)
    assert fired == [("early", 0.1), ("late", 0.3)]
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_manual_scheduler_repeats_and_cancels_intervals() -> None:
    scheduler = ManualScheduler(start=0.0)
    ticks: list[float] = []

    handle = scheduler.call_every(1.0, lambda: ticks.append(scheduler.time()))
    await scheduler.advance(3.5)
    handle.cancel()
    await scheduler.advance(5.0)

    assert ticks == [1.0, 2.0, 3.0]
    assert not handle.active


@pytest.mark.asyncio
async def test_manual_scheduler_awaits_coroutine_callbacks_and_logs_failures() -> None:
    scheduler = ManualScheduler(start=0.0)
    done: list[str] = []

    async def ok() -> None:
        done.append("ok")

    def broken() -> None:
        raise RuntimeError("boom")

    scheduler.call_later(1.0, broken)
    scheduler.call_later(1.0, ok)
    await scheduler.advance(1.0)

    assert done == ["ok"]


@pytest.mark.asyncio
async def test_manual_scheduler_sleep_wakes_on_advance() -> None:
    scheduler = ManualScheduler(start=0.0)
    woke = asyncio.Event()

    async def sleeper() -> None:
        await scheduler.sleep(2.0)
        woke.set()

    task = asyncio.create_task(sleeper())
    await asyncio.sleep(0)
    await scheduler.advance(1.0)
    assert not woke.is_set()

    await scheduler.advance(1.0)
    await asyncio.wait_for(task, timeout=0.5)
    assert woke.is_set()


def test_call_every_rejects_non_positive_interval() -> None:
    scheduler = ManualScheduler(start=0.0)
    with pytest.raises(ValueError):
        scheduler.call_every(0, lambda: None)


def test_schedulers_satisfy_protocol() -> None:
    assert isinstance(ManualScheduler(), Scheduler)
    assert isinstance(AsyncioScheduler(), Scheduler)


@pytest.mark.asyncio
async def test_asyncio_scheduler_fires_on_running_loop() -> None:
    scheduler = AsyncioScheduler()
    fired = asyncio.Event()
    ticks: list[int] = []

    scheduler.call_later(0.01, fired.set)
    handle = scheduler.call_every(0.01, lambda: ticks.append(1))

    await asyncio.wait_for(fired.wait(), timeout=0.5)
    while len(ticks) < 2:
        await asyncio.sleep(0.01)
    handle.cancel()
    count = len(ticks)
    await asyncio.sleep(0.05)
    await scheduler.drain()

    assert len(ticks) == count
