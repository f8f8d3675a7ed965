# backend/tests/unit/services/discovery/test_background.py
"""Unit tests for the detached write-back queue."""

from __future__ import annotations

import asyncio

import pytest

from poi_discovery.core.exceptions import PersistenceWarning
from poi_discovery.services.discovery.background import BackgroundTaskQueue


class TestSubmit:
    @pytest.mark.asyncio
    async def test_sync_job_runs_in_thread(self):
        queue = BackgroundTaskQueue()
        seen = []

        task = queue.submit("record", seen.append, "row-1")
        await task

        assert seen == ["row-1"]
        assert queue.stats()["completed"] == 1

    @pytest.mark.asyncio
    async def test_async_job_runs_on_loop(self):
        queue = BackgroundTaskQueue()

        async def job(value):
            await asyncio.sleep(0)
            return value * 2

        assert await queue.submit("double", job, 21) == 42

    @pytest.mark.asyncio
    async def test_submit_returns_before_job_finishes(self):
        queue = BackgroundTaskQueue()
        release = asyncio.Event()

        async def job():
            await release.wait()

        queue.submit("slow", job)
        assert queue.pending == 1

        release.set()
        assert await queue.drain(timeout=1.0) is True
        assert queue.pending == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_becomes_persistence_warning(self):
        queue = BackgroundTaskQueue()
        received = []
        queue.add_error_listener(received.append)

        def broken():
            raise RuntimeError("disk full")

        result = await queue.submit("save_generated_pois", broken)

        assert result is None
        (warning,) = queue.errors
        assert isinstance(warning, PersistenceWarning)
        assert warning.operation == "save_generated_pois"
        assert isinstance(warning.cause, RuntimeError)
        assert received == [warning]

        stats = queue.stats()
        assert stats["failed"] == 1
        assert stats["completed"] == 0
        assert stats["recent_errors"] == [
            {"operation": "save_generated_pois", "error": "disk full"}
        ]

    @pytest.mark.asyncio
    async def test_broken_listener_does_not_propagate(self):
        queue = BackgroundTaskQueue()

        def bad_listener(warning):
            raise ValueError("listener bug")

        def broken():
            raise RuntimeError("boom")

        queue.add_error_listener(bad_listener)
        await queue.submit("op", broken)

        assert queue.stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_error_history_is_bounded(self):
        queue = BackgroundTaskQueue(max_error_history=2)

        def broken():
            raise RuntimeError("boom")

        for i in range(3):
            await queue.submit(f"op-{i}", broken)

        assert [w.operation for w in queue.errors] == ["op-1", "op-2"]
        assert queue.stats()["failed"] == 3


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_drain_with_nothing_pending(self):
        assert await BackgroundTaskQueue().drain() is True

    @pytest.mark.asyncio
    async def test_drain_timeout_reports_pending(self):
        queue = BackgroundTaskQueue()
        release = asyncio.Event()

        async def job():
            await release.wait()

        queue.submit("stuck", job)

        assert await queue.drain(timeout=0.01) is False

        release.set()
        await queue.drain()

    @pytest.mark.asyncio
    async def test_close_waits_and_rejects_new_jobs(self):
        queue = BackgroundTaskQueue()
        done = []

        async def job():
            await asyncio.sleep(0.01)
            done.append(True)

        queue.submit("job", job)
        await queue.close()

        assert done == [True]
        with pytest.raises(RuntimeError):
            queue.submit("late", job)
