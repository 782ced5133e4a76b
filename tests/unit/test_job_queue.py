"""Unit tests for the single-drain FIFO JobQueue."""

from __future__ import annotations

import asyncio

import pytest

from src.pipeline.job_queue import JobQueue
from src.utils.errors import QueueFullError


def _recorder(log: list[str], label: str, delay: float = 0.0):
    async def _job() -> None:
        if delay:
            await asyncio.sleep(delay)
        log.append(label)

    return _job


class TestEnqueue:
    def test_enqueue_without_loop_waits_for_explicit_drain(self) -> None:
        queue = JobQueue(max_size=5)
        assert queue.enqueue("job", _recorder([], "a"))
        assert queue.length == 1
        assert not queue.is_processing

    def test_duplicate_key_is_dropped(self) -> None:
        queue = JobQueue(max_size=5)
        assert queue.enqueue("process_document", _recorder([], "a"), key="process:1")
        assert not queue.enqueue("process_document", _recorder([], "b"), key="process:1")
        assert queue.length == 1

    def test_full_queue_raises(self) -> None:
        queue = JobQueue(max_size=2)
        queue.enqueue("a", _recorder([], "a"))
        queue.enqueue("b", _recorder([], "b"))
        with pytest.raises(QueueFullError):
            queue.enqueue("c", _recorder([], "c"))

    def test_status_and_stats(self) -> None:
        queue = JobQueue(max_size=3)
        queue.enqueue("a", _recorder([], "a"))

        status = queue.status()
        assert status.queue_length == 1
        assert status.is_processing is False
        assert queue.get_stats()["max_size"] == 3


class TestDrain:
    @pytest.mark.asyncio
    async def test_jobs_run_in_fifo_order(self) -> None:
        queue = JobQueue(max_size=10)
        log: list[str] = []
        for label in ["first", "second", "third"]:
            queue.enqueue("record", _recorder(log, label, delay=0.001))

        await queue.wait_until_idle()

        assert log == ["first", "second", "third"]
        assert queue.length == 0
        assert queue.get_stats()["completed"] == 3

    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_drain(self) -> None:
        queue = JobQueue(max_size=10)
        log: list[str] = []

        async def _boom() -> None:
            raise RuntimeError("provider exploded")

        queue.enqueue("ok", _recorder(log, "before"))
        queue.enqueue("bad", _boom)
        queue.enqueue("ok", _recorder(log, "after"))

        await queue.wait_until_idle()

        assert log == ["before", "after"]
        stats = queue.get_stats()
        assert stats["failed"] == 1
        assert stats["completed"] == 2

    @pytest.mark.asyncio
    async def test_only_one_drain_runs_at_a_time(self) -> None:
        queue = JobQueue(max_size=10)
        running = 0
        peak = 0

        async def _tracked() -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.005)
            running -= 1

        for _ in range(4):
            queue.enqueue("tracked", _tracked)

        second = await asyncio.gather(queue.process_queue(), queue.process_queue())
        await queue.wait_until_idle()

        assert peak == 1
        assert 0 in second
        assert queue.get_stats()["completed"] == 4

    @pytest.mark.asyncio
    async def test_jobs_enqueued_during_drain_are_picked_up(self) -> None:
        queue = JobQueue(max_size=10)
        log: list[str] = []

        async def _spawner() -> None:
            log.append("spawner")
            queue.enqueue("child", _recorder(log, "child"))

        queue.enqueue("spawner", _spawner)
        await queue.wait_until_idle()

        assert log == ["spawner", "child"]

    @pytest.mark.asyncio
    async def test_key_can_be_requeued_after_it_ran(self) -> None:
        queue = JobQueue(max_size=10)
        log: list[str] = []

        queue.enqueue("job", _recorder(log, "one"), key="embed:1")
        await queue.wait_until_idle()
        assert queue.enqueue("job", _recorder(log, "two"), key="embed:1")
        await queue.wait_until_idle()

        assert log == ["one", "two"]
