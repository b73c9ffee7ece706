# tests/services/test_exclusive_queue.py
import asyncio

import pytest

from repertoire_builder.exceptions import QueueClosedError
from repertoire_builder.services.exclusive_queue import ExclusiveQueue


@pytest.mark.asyncio
async def test_tasks_run_one_at_a_time_in_submission_order():
    windows = {}
    loop = asyncio.get_running_loop()

    def make_task(name):
        async def task():
            start = loop.time()
            await asyncio.sleep(0.02)
            windows[name] = (start, loop.time())
            return name
        return task

    async with ExclusiveQueue(name="test") as queue:
        results = await asyncio.gather(*(queue.run(make_task(name)) for name in "ABC"))

    assert results == ["A", "B", "C"]
    (a_start, a_end), (b_start, b_end), (c_start, c_end) = windows["A"], windows["B"], windows["C"]
    assert a_start <= b_start <= c_start
    assert a_end <= b_start
    assert b_end <= c_start


@pytest.mark.asyncio
async def test_failure_propagates_and_does_not_stall_queue():
    async def boom():
        raise ValueError("engine exploded")

    async def ok():
        return 42

    async with ExclusiveQueue() as queue:
        with pytest.raises(ValueError, match="engine exploded"):
            await queue.run(boom)
        assert await queue.run(ok) == 42


@pytest.mark.asyncio
async def test_task_is_not_started_before_its_turn():
    started = []
    release = asyncio.Event()

    async def blocker():
        started.append("blocker")
        await release.wait()

    async def second():
        started.append("second")

    async with ExclusiveQueue() as queue:
        first = asyncio.create_task(queue.run(blocker))
        follow = asyncio.create_task(queue.run(second))
        await asyncio.sleep(0.01)
        assert started == ["blocker"]
        release.set()
        await asyncio.gather(first, follow)
    assert started == ["blocker", "second"]


@pytest.mark.asyncio
async def test_cancelled_waiter_is_skipped_and_worker_survives():
    release = asyncio.Event()
    ran = []

    async def blocker():
        await release.wait()

    async def skipped():
        ran.append("skipped")

    async def after():
        ran.append("after")
        return "done"

    async with ExclusiveQueue() as queue:
        first = asyncio.create_task(queue.run(blocker))
        waiter = asyncio.create_task(queue.run(skipped))
        await asyncio.sleep(0.01)
        waiter.cancel()
        release.set()
        await first
        assert await queue.run(after) == "done"
    assert ran == ["after"]


@pytest.mark.asyncio
async def test_closed_queue_rejects_new_tasks():
    queue = ExclusiveQueue()
    queue.start()
    await queue.close()

    async def task():
        return 1

    with pytest.raises(QueueClosedError):
        await queue.run(task)
