"""
Tests for revshare/scheduler.py and revshare/shutdown.py

Tests cover:
- Non-overlapping runs
- Failures are counted, never kill the loop
- Pausing waits for in-flight runs
- Graceful shutdown handler ordering
"""

import asyncio

import pytest

from revshare.scheduler import PeriodicTask, TaskScheduler
from revshare.shutdown import GracefulShutdown, ShutdownPhase


class TestPeriodicTask:
    """Single task behaviour."""

    @pytest.mark.asyncio
    async def test_overlapping_trigger_skipped(self):
        release = asyncio.Event()
        calls = []

        async def slow():
            calls.append(1)
            await release.wait()

        task = PeriodicTask("slow", slow, interval_seconds=60)
        first = asyncio.create_task(task.run_once())
        await asyncio.sleep(0)

        assert await task.run_once() is False
        assert task.skipped == 1

        release.set()
        assert await first is True
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_failure_is_counted(self):
        async def broken():
            raise RuntimeError("upstream down")

        task = PeriodicTask("broken", broken, interval_seconds=60)

        assert await task.run_once() is True
        assert task.failures == 1
        assert task.last_error == "upstream down"
        assert task.running is False

    @pytest.mark.asyncio
    async def test_loop_survives_failures(self):
        runs = []

        async def flaky():
            runs.append(1)
            if len(runs) == 1:
                raise RuntimeError("first run fails")

        task = PeriodicTask("flaky", flaky, interval_seconds=0.01)
        task.start()
        for _ in range(100):
            if len(runs) >= 3:
                break
            await asyncio.sleep(0.01)
        await task.stop()

        assert len(runs) >= 3
        assert task.failures == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_run(self):
        started = asyncio.Event()

        async def forever():
            started.set()
            await asyncio.sleep(3600)

        task = PeriodicTask("forever", forever, interval_seconds=60)
        task.start()
        await started.wait()
        await task.stop()

        assert task.running is False
        assert task.status()["runs"] == 1


class TestTaskScheduler:
    """Scheduler ownership and pausing."""

    def test_duplicate_names_rejected(self):
        async def noop():
            return None

        scheduler = TaskScheduler()
        scheduler.add(PeriodicTask("ingestion", noop, 60))
        with pytest.raises(ValueError):
            scheduler.add(PeriodicTask("ingestion", noop, 60))

    @pytest.mark.asyncio
    async def test_paused_waits_for_running_task(self):
        release = asyncio.Event()
        order = []

        async def work():
            order.append("start")
            await release.wait()
            order.append("end")

        scheduler = TaskScheduler()
        task = scheduler.add(PeriodicTask("snapshot", work, 60))
        in_flight = asyncio.create_task(task.run_once())
        await asyncio.sleep(0)

        async def distribute():
            async with scheduler.paused():
                order.append("distribute")
                assert all(s["paused"] for s in scheduler.status())

        pausing = asyncio.create_task(distribute())
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(in_flight, pausing)

        assert order == ["start", "end", "distribute"]
        assert not any(s["paused"] for s in scheduler.status())


class TestGracefulShutdown:
    """Ordered cleanup."""

    @pytest.mark.asyncio
    async def test_handlers_run_in_priority_order(self):
        order = []

        async def stop_scheduler():
            order.append("scheduler")

        def close_store():
            order.append("store")

        def broken():
            raise RuntimeError("close failed")

        shutdown = GracefulShutdown()
        shutdown.register("store", close_store, priority=90)
        shutdown.register("broken", broken, priority=50)
        shutdown.register("scheduler", stop_scheduler, priority=10)

        await shutdown.initiate("test")
        await shutdown.wait_for_shutdown()

        assert order == ["scheduler", "store"]
        assert shutdown.state.phase == ShutdownPhase.TERMINATED
        assert shutdown.get_status()["handlers_failed"] == ["broken"]

    @pytest.mark.asyncio
    async def test_second_initiate_ignored(self):
        calls = []
        shutdown = GracefulShutdown()
        shutdown.register("once", lambda: calls.append(1))

        await shutdown.initiate("first")
        await shutdown.initiate("second")

        assert calls == [1]
        assert shutdown.state.reason == "first"
