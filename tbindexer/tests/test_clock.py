import pytest

from tbindexer.tests.fakes import FakeClock, settle
from tbindexer.utils.clock import PeriodicTask


@pytest.mark.asyncio
async def test_ticks_every_interval():
    clock = FakeClock(auto_advance=False)
    ticks = []

    async def tick():
        ticks.append(clock.monotonic())

    task = PeriodicTask("t", 10.0, tick, clock=clock)
    task.start()
    await settle()
    assert ticks == []

    await clock.advance(10.0)
    await clock.advance(10.0)
    assert ticks == [10.0, 20.0]

    await task.stop()
    assert not task.running


@pytest.mark.asyncio
async def test_run_immediately():
    clock = FakeClock(auto_advance=False)
    ticks = []

    async def tick():
        ticks.append(clock.monotonic())

    task = PeriodicTask("t", 10.0, tick, clock=clock, run_immediately=True)
    task.start()
    await settle()

    assert ticks == [0.0]
    await task.stop()


@pytest.mark.asyncio
async def test_failing_tick_does_not_stop_the_loop():
    clock = FakeClock(auto_advance=False)
    calls = []

    async def tick():
        calls.append(clock.monotonic())
        if len(calls) == 1:
            raise RuntimeError("first tick fails")

    task = PeriodicTask("t", 5.0, tick, clock=clock)
    task.start()
    await settle()
    await clock.advance(5.0)
    await clock.advance(5.0)

    assert calls == [5.0, 10.0]
    assert task.running
    await task.stop()
