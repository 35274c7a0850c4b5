"""
Tests for the cancellable periodic task.
"""

import asyncio

from core.scheduling import PeriodicTask

from conftest import wait_until


def test_runs_repeatedly_until_cancelled():
    async def scenario():
        calls = []

        async def body():
            calls.append(1)

        task = PeriodicTask(body, 0.001, name="test").start()
        assert await wait_until(lambda: len(calls) >= 3)
        task.cancel()
        count = len(calls)
        await asyncio.sleep(0.02)
        return task, count, len(calls)

    task, count_at_cancel, count_after = asyncio.run(scenario())
    assert count_after == count_at_cancel
    assert not task.running


def test_at_most_one_body_in_flight():
    async def scenario():
        state = {"in_flight": 0, "max": 0, "done": 0}

        async def body():
            state["in_flight"] += 1
            state["max"] = max(state["max"], state["in_flight"])
            await asyncio.sleep(0.005)
            state["in_flight"] -= 1
            state["done"] += 1

        task = PeriodicTask(body, 0.0).start()
        await wait_until(lambda: state["done"] >= 5)
        task.cancel()
        return state

    state = asyncio.run(scenario())
    assert state["max"] == 1


def test_failing_body_does_not_stop_the_loop():
    async def scenario():
        calls = []

        async def body():
            calls.append(1)
            if len(calls) <= 2:
                raise ValueError("transient")

        task = PeriodicTask(body, 0.001).start()
        await wait_until(lambda: len(calls) >= 4)
        task.cancel()
        return len(calls)

    assert asyncio.run(scenario()) >= 4


def test_cancel_from_inside_body_stops_after_that_iteration():
    async def scenario():
        calls = []
        holder = {}

        async def body():
            calls.append(1)
            holder["task"].cancel()

        holder["task"] = PeriodicTask(body, 0.001)
        holder["task"].start()
        await asyncio.sleep(0.03)
        return len(calls), holder["task"]

    calls, task = asyncio.run(scenario())
    assert calls == 1
    assert not task.running


def test_delayed_start_waits_one_interval():
    async def scenario():
        calls = []

        async def body():
            calls.append(1)

        task = PeriodicTask(body, 0.2, run_immediately=False).start()
        await asyncio.sleep(0.02)
        early = len(calls)
        task.cancel()
        return early

    assert asyncio.run(scenario()) == 0


def test_cancel_is_idempotent():
    async def scenario():
        async def body():
            pass

        task = PeriodicTask(body, 0.01).start()
        task.cancel()
        task.cancel()
        return task.running

    assert asyncio.run(scenario()) is False
