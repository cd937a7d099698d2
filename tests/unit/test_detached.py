"""
Tests for fire-and-forget jobs.
"""

import asyncio

import pytest

from converge.engine.detached import DetachedDispatcher


class TestDispatch:

    @pytest.mark.asyncio
    async def test_returns_before_the_job_finishes(self):
        dispatcher = DetachedDispatcher()
        started = asyncio.Event()

        async def job():
            started.set()
            await asyncio.sleep(10)

        job_id = dispatcher.dispatch("Reboot the server", job())

        assert dispatcher.pending == 1
        assert not started.is_set()
        await dispatcher.drain(grace=0.01)
        assert job_id

    @pytest.mark.asyncio
    async def test_job_ids_are_unique(self):
        dispatcher = DetachedDispatcher()

        ids = {dispatcher.dispatch("noop", asyncio.sleep(0)) for _ in range(3)}

        assert len(ids) == 3
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_finished_jobs_are_forgotten(self):
        dispatcher = DetachedDispatcher()

        dispatcher.dispatch("noop", asyncio.sleep(0))
        await asyncio.sleep(0.01)

        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_job_errors_are_not_raised(self):
        dispatcher = DetachedDispatcher()

        async def broken():
            raise OSError("connection closed by remote host")

        dispatcher.dispatch("Restart networking", broken())
        await asyncio.sleep(0.01)

        assert dispatcher.pending == 0
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_timeout_cancels_the_job(self):
        dispatcher = DetachedDispatcher()

        dispatcher.dispatch("slow", asyncio.sleep(10), timeout=0.01)
        await asyncio.sleep(0.1)

        assert dispatcher.pending == 0


class TestDrain:

    @pytest.mark.asyncio
    async def test_nothing_pending(self):
        await DetachedDispatcher().drain(grace=0)

    @pytest.mark.asyncio
    async def test_waits_for_quick_jobs(self):
        dispatcher = DetachedDispatcher()
        done = []

        async def job():
            await asyncio.sleep(0.01)
            done.append(True)

        dispatcher.dispatch("quick", job())
        await dispatcher.drain(grace=1)

        assert done == [True]
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_cancels_jobs_past_the_grace_period(self, caplog):
        dispatcher = DetachedDispatcher()
        cancelled = []

        async def job():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        dispatcher.dispatch("stuck", job())
        with caplog.at_level("INFO", logger="converge"):
            await dispatcher.drain(grace=0.01)

        assert cancelled == [True]
        assert dispatcher.pending == 0
        assert "cancelled 1 detached jobs" in caplog.text
