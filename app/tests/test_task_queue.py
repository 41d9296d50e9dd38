"""
Tests for TaskQueue.

Tests:
- Single-flight and FIFO per channel, independence across channels
- Backpressure (synthesized failed Task, deferred event)
- Cancellation of queued and running Tasks
- Failure handling and draining after failure
- Cleanup of finished and orphaned Tasks
- Listing, health check, shutdown
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from switchboard.core.metrics import metrics
from switchboard.kernel.contracts import TaskEventKind, TaskMetadata, TaskStatus, utc_now
from switchboard.kernel.event_bus import EventBus
from switchboard.kernel.task_queue import (
    CANCELLED_MESSAGE,
    ORPHANED_MESSAGE,
    QUEUE_FULL_MESSAGE,
    TaskQueue,
)


# ─── Helpers ──────────────────────────────────────────────────


class Gate:
    """Work function that blocks until released. Records when it started."""

    def __init__(self, result: str = "ok", log: list | None = None, name: str = ""):
        self.result = result
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.log = log
        self.name = name
        self.abort: asyncio.Event | None = None

    async def __call__(self, abort: asyncio.Event) -> str:
        self.abort = abort
        self.started.set()
        if self.log is not None:
            self.log.append(self.name)
        await self.release.wait()
        return self.result


async def instant(abort: asyncio.Event) -> str:
    return "done"


async def wait_terminal(task, timeout: float = 1.0) -> None:
    async def _poll():
        while not task.is_terminal:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


def record(queue: TaskQueue) -> list[tuple[str, str]]:
    """Collect (kind, task_id) for every lifecycle event."""
    events: list[tuple[str, str]] = []
    for kind in TaskEventKind:
        queue.on(kind, lambda e, k=kind: events.append((k.value, e.task.id)))
    return events


# ─── Single-flight / ordering ─────────────────────────────────


class TestOrdering:
    @pytest.mark.asyncio
    async def test_idle_channel_starts_immediately(self):
        queue = TaskQueue()
        events = record(queue)
        gate = Gate()

        task = queue.enqueue("c1", gate)

        assert task.status == TaskStatus.RUNNING
        assert task.started_at is not None
        assert queue.get_active_task("c1") is task
        assert events == [("started", task.id)]

        gate.release.set()
        await wait_terminal(task)
        assert task.status == TaskStatus.COMPLETED
        assert task.result == "ok"
        assert queue.get_active_task("c1") is None

    @pytest.mark.asyncio
    async def test_second_task_waits_for_first(self):
        queue = TaskQueue()
        first, second = Gate("one"), Gate("two")

        t1 = queue.enqueue("c1", first)
        t2 = queue.enqueue("c1", second)

        assert t1.status == TaskStatus.RUNNING
        assert t2.status == TaskStatus.QUEUED
        assert queue.get_pending_ids("c1") == [t2.id]

        await first.started.wait()
        assert not second.started.is_set()

        first.release.set()
        await wait_terminal(t1)
        await asyncio.wait_for(second.started.wait(), 1.0)
        assert t2.status == TaskStatus.RUNNING

        second.release.set()
        await wait_terminal(t2)
        assert t2.result == "two"

    @pytest.mark.asyncio
    async def test_fifo_order_within_channel(self):
        queue = TaskQueue()
        log: list[str] = []
        gates = [Gate(log=log, name=str(i)) for i in range(4)]
        tasks = [queue.enqueue("c1", g) for g in gates]

        for gate in gates:
            gate.release.set()
        for task in tasks:
            await wait_terminal(task)

        assert log == ["0", "1", "2", "3"]
        starts = [t.started_at for t in tasks]
        assert starts == sorted(starts)

    @pytest.mark.asyncio
    async def test_never_two_running_in_one_channel(self):
        queue = TaskQueue()
        running = 0
        peak = 0

        async def work(abort):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.005)
            running -= 1
            return "x"

        tasks = [queue.enqueue("c1", work) for _ in range(5)]
        for task in tasks:
            await wait_terminal(task)

        assert peak == 1

    @pytest.mark.asyncio
    async def test_channels_are_independent(self):
        queue = TaskQueue()
        slow = Gate()
        t_slow = queue.enqueue("c1", slow)
        t_fast = queue.enqueue("c2", instant)

        await wait_terminal(t_fast)
        assert t_fast.status == TaskStatus.COMPLETED
        assert t_slow.status == TaskStatus.RUNNING

        slow.release.set()
        await wait_terminal(t_slow)

    @pytest.mark.asyncio
    async def test_event_order_for_one_task(self):
        queue = TaskQueue()
        events = record(queue)
        task = queue.enqueue("c1", instant)
        await wait_terminal(task)

        assert events == [("started", task.id), ("completed", task.id)]


# ─── Backpressure ─────────────────────────────────────────────


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_overflow_returns_failed_task(self):
        queue = TaskQueue(max_queue_depth=2)
        gate = Gate()
        queue.enqueue("c1", gate)  # running, not counted
        queue.enqueue("c1", instant)
        queue.enqueue("c1", instant)

        rejected = queue.enqueue("c1", instant)

        assert rejected.status == TaskStatus.FAILED
        assert rejected.error == QUEUE_FULL_MESSAGE
        assert rejected.completed_at is not None
        assert queue.get_queued_count("c1") == 2
        assert rejected.id not in queue.get_pending_ids("c1")
        assert metrics.counter("queue.tasks.rejected", {"platform": "unknown"}) == 1

        gate.release.set()

    @pytest.mark.asyncio
    async def test_overflow_event_reaches_listener_attached_after_enqueue(self):
        queue = TaskQueue(max_queue_depth=0)
        rejected = queue.enqueue("c1", instant)

        seen = []
        queue.on(TaskEventKind.FAILED, lambda e: seen.append(e.task.id))
        await asyncio.sleep(0)

        assert seen == [rejected.id]

    @pytest.mark.asyncio
    async def test_other_channels_unaffected_by_overflow(self):
        queue = TaskQueue(max_queue_depth=0)
        queue.enqueue("full", instant)
        # Depth 0 rejects everything, even on an idle channel
        assert queue.enqueue("full", instant).status == TaskStatus.FAILED

        roomy = TaskQueue(max_queue_depth=1)
        gate = Gate()
        roomy.enqueue("c1", gate)
        roomy.enqueue("c1", instant)
        assert roomy.enqueue("c1", instant).status == TaskStatus.FAILED
        assert roomy.enqueue("c2", instant).status == TaskStatus.RUNNING
        gate.release.set()


# ─── Cancellation ─────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_queued_task(self):
        queue = TaskQueue()
        events = record(queue)
        blocker = Gate()
        waiting = Gate()

        queue.enqueue("c1", blocker)
        queued = queue.enqueue("c1", waiting)

        assert queue.cancel(queued.id) is True
        assert queued.status == TaskStatus.CANCELLED
        assert queued.error == CANCELLED_MESSAGE
        assert not queued.abort.is_set()
        assert queue.get_pending_ids("c1") == []
        assert ("cancelled", queued.id) in events

        blocker.release.set()
        await asyncio.sleep(0.01)
        assert not waiting.started.is_set()

    @pytest.mark.asyncio
    async def test_cancel_running_task_that_honours_abort(self):
        queue = TaskQueue()

        async def work(abort):
            await abort.wait()
            raise RuntimeError("stopped")

        task = queue.enqueue("c1", work)
        await asyncio.sleep(0)

        assert queue.cancel(task.id) is True
        assert task.abort.is_set()
        await wait_terminal(task)

        assert task.status == TaskStatus.CANCELLED
        assert task.error == CANCELLED_MESSAGE

    @pytest.mark.asyncio
    async def test_cancel_running_task_that_ignores_abort(self):
        queue = TaskQueue()
        gate = Gate(result="finished anyway")
        task = queue.enqueue("c1", gate)
        await gate.started.wait()

        queue.cancel(task.id)
        gate.release.set()
        await wait_terminal(task)

        assert task.status == TaskStatus.CANCELLED
        assert task.result is None

    @pytest.mark.asyncio
    async def test_cancel_running_starts_next(self):
        queue = TaskQueue()

        async def work(abort):
            await abort.wait()
            return "aborted"

        first = queue.enqueue("c1", work)
        second = queue.enqueue("c1", instant)
        await asyncio.sleep(0)

        queue.cancel(first.id)
        await wait_terminal(second)

        assert first.status == TaskStatus.CANCELLED
        assert second.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_runner_cancellation_propagates(self):
        queue = TaskQueue()
        gate = Gate()

        first = queue.enqueue("c1", gate)
        second = queue.enqueue("c1", instant)
        await gate.started.wait()
        runner = queue._runners[first.id]

        runner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await runner
        await wait_terminal(second)

        assert runner.cancelled()
        assert first.status == TaskStatus.CANCELLED
        assert first.error == CANCELLED_MESSAGE
        assert second.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_terminal(self):
        queue = TaskQueue()
        assert queue.cancel("missing") is False

        task = queue.enqueue("c1", instant)
        await wait_terminal(task)
        assert queue.cancel(task.id) is False
        assert task.status == TaskStatus.COMPLETED


# ─── Failures ─────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_records_error_and_drains(self):
        queue = TaskQueue()
        events = record(queue)

        async def broken(abort):
            raise ValueError("agent exploded")

        bad = queue.enqueue("c1", broken)
        good = queue.enqueue("c1", instant)
        await wait_terminal(good)

        assert bad.status == TaskStatus.FAILED
        assert bad.error == "agent exploded"
        assert good.status == TaskStatus.COMPLETED
        assert events.index(("failed", bad.id)) < events.index(("started", good.id))

    @pytest.mark.asyncio
    async def test_failure_without_message_uses_type_name(self):
        queue = TaskQueue()

        async def broken(abort):
            raise KeyError()

        task = queue.enqueue("c1", broken)
        await wait_terminal(task)
        assert task.error == "KeyError"

    @pytest.mark.asyncio
    async def test_listener_error_does_not_stall_queue(self):
        queue = TaskQueue()

        def bad_listener(event):
            raise RuntimeError("listener bug")

        queue.on(TaskEventKind.COMPLETED, bad_listener)
        first = queue.enqueue("c1", instant)
        second = queue.enqueue("c1", instant)
        await wait_terminal(second)

        assert first.status == TaskStatus.COMPLETED
        assert second.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_each_task_has_one_terminal_event(self):
        queue = TaskQueue()
        events = record(queue)
        gate = Gate()
        task = queue.enqueue("c1", gate)
        await gate.started.wait()

        queue.cancel(task.id)
        queue.cancel(task.id)
        gate.release.set()
        await wait_terminal(task)
        await asyncio.sleep(0)

        terminal = [k for k, tid in events if tid == task.id and k != "started"]
        assert terminal == ["cancelled"]


# ─── Cleanup ──────────────────────────────────────────────────


class TestCleanup:
    @pytest.mark.asyncio
    async def test_old_terminal_tasks_removed(self):
        queue = TaskQueue(retention=60)
        task = queue.enqueue("c1", instant)
        await wait_terminal(task)

        queue.cleanup(now=utc_now() + timedelta(seconds=30))
        assert queue.get_task(task.id) is task

        queue.cleanup(now=utc_now() + timedelta(seconds=120))
        assert queue.get_task(task.id) is None

    @pytest.mark.asyncio
    async def test_orphaned_queued_task_cancelled(self):
        queue = TaskQueue(orphan_age=600)
        events = record(queue)
        gate = Gate()
        running = queue.enqueue("c1", gate)
        queued = queue.enqueue("c1", instant)

        queue.cleanup(now=utc_now() + timedelta(seconds=900))

        assert queued.status == TaskStatus.CANCELLED
        assert queued.error == ORPHANED_MESSAGE
        assert ("cancelled", queued.id) in events
        assert queue.get_pending_ids("c1") == []
        assert running.status == TaskStatus.RUNNING

        gate.release.set()
        await wait_terminal(running)

    @pytest.mark.asyncio
    async def test_cleanup_loop_lifecycle(self):
        queue = TaskQueue(cleanup_interval=0.01)
        queue.start()
        queue.start()  # idempotent
        assert queue.health_check()["cleanup_running"] is True

        queue.shutdown()
        assert queue.health_check()["cleanup_running"] is False


# ─── Queries ──────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_all_tasks(self):
        queue = TaskQueue()
        done = queue.enqueue("c1", instant)
        await wait_terminal(done)
        gate = Gate()
        active = queue.enqueue("c2", gate)

        assert queue.get_all_tasks() == [active]
        listed = queue.get_all_tasks(include_recent=True)
        assert listed == [active, done]  # newest first

        gate.release.set()
        await wait_terminal(active)

    @pytest.mark.asyncio
    async def test_metadata_and_to_dict(self):
        queue = TaskQueue()
        meta = TaskMetadata(message_preview="hi", platform="telegram", user_name="ana")
        task = queue.enqueue("c1", instant, meta)
        await wait_terminal(task)

        data = task.to_dict()
        assert data["status"] == "completed"
        assert data["platform"] == "telegram"
        assert data["message_preview"] == "hi"
        assert metrics.counter("queue.tasks.enqueued", {"platform": "telegram"}) == 1

    @pytest.mark.asyncio
    async def test_health_check_counts(self):
        queue = TaskQueue()
        gate = Gate()
        queue.enqueue("c1", gate)
        queue.enqueue("c1", instant)

        health = queue.health_check()
        assert health["active_channels"] == 1
        assert health["pending"] == 1
        assert health["tasks"]["running"] == 1
        assert health["tasks"]["queued"] == 1

        gate.release.set()

    @pytest.mark.asyncio
    async def test_shutdown_clears_state_and_listeners(self):
        bus = EventBus()
        queue = TaskQueue(event_bus=bus)
        queue.on(TaskEventKind.STARTED, lambda e: None)
        task = queue.enqueue("c1", instant)
        await wait_terminal(task)

        queue.shutdown()

        assert queue.get_task(task.id) is None
        assert bus.subscriber_count(TaskEventKind.STARTED.topic) == 0

    @pytest.mark.asyncio
    async def test_off_removes_listener(self):
        queue = TaskQueue()
        seen = []
        queue.on("started", seen.append)
        queue.off("started", seen.append)

        task = queue.enqueue("c1", instant)
        await wait_terminal(task)
        assert seen == []
