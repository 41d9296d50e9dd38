"""
Task Queue — per-channel FIFO serializer for agent work.

Guarantees:
  - At most one running Task per channel (single-flight)
  - Tasks of one channel start strictly in enqueue order
  - Channels never wait on each other

Backpressure:
  - A channel with max_queue_depth pending Tasks rejects new work with a Task
    that is already "failed". The failed event is emitted on the next loop
    tick so a caller can attach listeners after enqueue() returns.

Cancellation:
  - Queued Task: removed from its pending list, cancelled immediately, abort
    handle never touched
  - Running Task: abort handle set; the Task is recorded as cancelled once
    the work function settles (whether it honours the signal or not)

Housekeeping:
  - Terminal Tasks are dropped after the retention window
  - Queued Tasks older than orphan_age are force-cancelled as orphans

Lifecycle events go through the EventBus on task.started / task.completed /
task.failed / task.cancelled with a TaskEvent payload.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Any

import switchboard.core.config as config_module
from switchboard.core.metrics import metrics
from switchboard.kernel.contracts import (
    SwitchboardError,
    Task,
    TaskEvent,
    TaskEventKind,
    TaskMetadata,
    TaskStatus,
    WorkFn,
    utc_now,
)
from switchboard.kernel.event_bus import EventBus, Listener

logger = logging.getLogger(__name__)

QUEUE_FULL_MESSAGE = (
    "Too many queued messages, please wait for previous messages to complete"
)
CANCELLED_MESSAGE = "Task was cancelled"
ORPHANED_MESSAGE = "Orphaned task cleaned up"


class QueueOverflowError(SwitchboardError):
    """A channel's pending list is at capacity."""

    def __init__(self, channel_id: str, depth: int) -> None:
        super().__init__(QUEUE_FULL_MESSAGE)
        self.channel_id = channel_id
        self.depth = depth


class TaskQueue:
    """
    Per-channel task queue.

    Owns every pending list, active marker and Task record. Callers hold
    task ids and look Tasks up again rather than keeping references around,
    since terminal Tasks are garbage-collected after the retention window.
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        max_queue_depth: int | None = None,
        cleanup_interval: float | None = None,
        retention: float | None = None,
        orphan_age: float | None = None,
        recent_window: float | None = None,
    ) -> None:
        cfg = config_module.config.queue
        self._bus = event_bus or EventBus()
        self._max_depth = (
            max_queue_depth if max_queue_depth is not None else cfg.max_queue_depth
        )
        self._cleanup_interval = (
            cleanup_interval if cleanup_interval is not None else cfg.cleanup_interval
        )
        self._retention = retention if retention is not None else cfg.retention
        self._orphan_age = orphan_age if orphan_age is not None else cfg.orphan_age
        self._recent_window = (
            recent_window if recent_window is not None else cfg.recent_window
        )

        # channel_id → pending task ids (head runs next)
        self._queues: dict[str, deque[str]] = {}
        # channel_id → running task id
        self._active: dict[str, str] = {}
        self._tasks: dict[str, Task] = {}
        self._work: dict[str, WorkFn] = {}
        self._runners: dict[str, asyncio.Task] = {}

        self._cleanup_task: asyncio.Task | None = None

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    # ─── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Start the periodic cleanup loop. Idempotent."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(
            self._cleanup_loop(), name="task-queue-cleanup"
        )
        logger.info(
            "Task queue started (max_depth=%d, cleanup every %.0fs)",
            self._max_depth,
            self._cleanup_interval,
        )

    def shutdown(self) -> None:
        """
        Stop cleanup and forget all state and listeners.

        Running work functions are left alone; cancel them first if they
        must stop.
        """
        if self._cleanup_task is not None and not self._cleanup_task.done():
            self._cleanup_task.cancel()
        self._cleanup_task = None

        self._queues.clear()
        self._active.clear()
        self._tasks.clear()
        self._work.clear()
        self._runners.clear()

        for kind in TaskEventKind:
            self._bus.clear_topic(kind.topic)

        logger.info("Task queue shut down")

    # ─── Listeners ────────────────────────────────────────────────

    def on(self, kind: TaskEventKind | str, listener: Listener) -> None:
        """Register a callback for one lifecycle event kind."""
        self._bus.add_listener(TaskEventKind(kind).topic, listener)

    def off(self, kind: TaskEventKind | str, listener: Listener) -> None:
        self._bus.remove_listener(TaskEventKind(kind).topic, listener)

    # ─── Operations ───────────────────────────────────────────────

    def enqueue(
        self,
        channel_id: str,
        work: WorkFn,
        metadata: TaskMetadata | None = None,
    ) -> Task:
        """
        Queue a unit of work for a channel and return its Task.

        Must be called from a running event loop. If the channel is idle the
        returned Task is already running.
        """
        metadata = metadata or TaskMetadata()
        labels = {"platform": metadata.platform or "unknown"}

        depth = self.get_queued_count(channel_id)
        if depth >= self._max_depth:
            overflow = QueueOverflowError(channel_id, depth)
            task = Task(channel_id=channel_id, metadata=metadata)
            task.transition(TaskStatus.FAILED, error=str(overflow))
            self._tasks[task.id] = task
            metrics.inc("queue.tasks.rejected", labels=labels)
            logger.warning(
                "Channel %s queue full (%d pending), rejecting task %s",
                channel_id,
                depth,
                task.id[:8],
                extra={"task_id": task.id, "channel_id": channel_id},
            )
            asyncio.get_running_loop().call_soon(
                self._emit, TaskEventKind.FAILED, task
            )
            return task

        task = Task(channel_id=channel_id, metadata=metadata)
        self._tasks[task.id] = task
        self._work[task.id] = work
        self._queues.setdefault(channel_id, deque()).append(task.id)

        metrics.inc("queue.tasks.enqueued", labels=labels)
        logger.debug(
            "Task %s queued on channel %s",
            task.id[:8],
            channel_id,
            extra={"task_id": task.id, "channel_id": channel_id},
        )

        self._process_next(channel_id)
        self._update_depth_gauge(channel_id)
        return task

    def cancel(self, task_id: str) -> bool:
        """
        Cancel a queued or running Task.

        Returns False for unknown or already-terminal Tasks.
        """
        task = self._tasks.get(task_id)
        if task is None:
            return False

        if task.status == TaskStatus.QUEUED:
            self._remove_pending(task)
            task.transition(TaskStatus.CANCELLED, error=CANCELLED_MESSAGE)
            self._work.pop(task_id, None)
            metrics.inc("queue.tasks.cancelled")
            logger.info(
                "Queued task %s cancelled",
                task_id[:8],
                extra={"task_id": task_id, "channel_id": task.channel_id},
            )
            self._emit(TaskEventKind.CANCELLED, task)
            return True

        if task.status == TaskStatus.RUNNING:
            task.abort.set()
            logger.info(
                "Abort requested for running task %s",
                task_id[:8],
                extra={"task_id": task_id, "channel_id": task.channel_id},
            )
            return True

        return False

    # ─── Queries ──────────────────────────────────────────────────

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def get_active_task(self, channel_id: str) -> Task | None:
        task_id = self._active.get(channel_id)
        return self._tasks.get(task_id) if task_id else None

    def get_queued_count(self, channel_id: str) -> int:
        return len(self._queues.get(channel_id, ()))

    def get_pending_ids(self, channel_id: str) -> list[str]:
        return list(self._queues.get(channel_id, ()))

    def get_all_tasks(self, include_recent: bool = False) -> list[Task]:
        """Non-terminal Tasks, plus recently finished ones if asked. Newest first."""
        cutoff = utc_now() - timedelta(seconds=self._recent_window)
        tasks = [
            task
            for task in self._tasks.values()
            if not task.is_terminal
            or (
                include_recent
                and task.completed_at is not None
                and task.completed_at > cutoff
            )
        ]
        return sorted(tasks, key=lambda t: t.created_at, reverse=True)

    def health_check(self) -> dict[str, Any]:
        by_status: dict[str, int] = {s.value: 0 for s in TaskStatus}
        for task in self._tasks.values():
            by_status[task.status.value] += 1
        return {
            "active_channels": len(self._active),
            "pending": sum(len(q) for q in self._queues.values()),
            "tasks": by_status,
            "cleanup_running": self._cleanup_task is not None
            and not self._cleanup_task.done(),
        }

    # ─── Cleanup ──────────────────────────────────────────────────

    def cleanup(self, now: datetime | None = None) -> None:
        """One housekeeping pass: drop old terminal Tasks, cancel orphans."""
        now = now or utc_now()
        retention_cutoff = now - timedelta(seconds=self._retention)
        orphan_cutoff = now - timedelta(seconds=self._orphan_age)

        removed = 0
        for task_id, task in list(self._tasks.items()):
            if (
                task.is_terminal
                and task.completed_at is not None
                and task.completed_at < retention_cutoff
            ):
                del self._tasks[task_id]
                self._work.pop(task_id, None)
                removed += 1
                continue

            if task.status == TaskStatus.QUEUED and task.created_at < orphan_cutoff:
                age_min = round((now - task.created_at).total_seconds() / 60)
                logger.warning(
                    "Cleaning up orphaned queued task %s (age: %dmin)",
                    task_id[:8],
                    age_min,
                    extra={"task_id": task_id, "channel_id": task.channel_id},
                )
                self._remove_pending(task)
                task.transition(TaskStatus.CANCELLED, error=ORPHANED_MESSAGE)
                self._work.pop(task_id, None)
                metrics.inc("queue.tasks.orphaned")
                self._emit(TaskEventKind.CANCELLED, task)

        if removed:
            logger.debug("Cleanup removed %d finished tasks", removed)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                self.cleanup()
            except Exception:
                logger.exception("Task queue cleanup pass failed")

    # ─── Draining ─────────────────────────────────────────────────

    def _process_next(self, channel_id: str) -> None:
        """Start the head of a channel's pending list if the channel is idle."""
        if channel_id in self._active:
            return

        queue = self._queues.get(channel_id)
        while queue:
            task_id = queue.popleft()
            task = self._tasks.get(task_id)
            work = self._work.get(task_id)
            if task is None or work is None or task.status != TaskStatus.QUEUED:
                continue

            self._active[channel_id] = task_id
            task.transition(TaskStatus.RUNNING)
            wait_ms = (task.started_at - task.created_at).total_seconds() * 1000
            metrics.observe("queue.wait_ms", wait_ms)
            logger.info(
                "Task %s started on channel %s",
                task_id[:8],
                channel_id,
                extra={"task_id": task_id, "channel_id": channel_id},
            )
            self._emit(TaskEventKind.STARTED, task)

            self._runners[task_id] = asyncio.create_task(
                self._run(task, work), name=f"task-{task_id[:8]}"
            )
            break

        if queue is not None and not queue and channel_id not in self._active:
            self._queues.pop(channel_id, None)

    async def _run(self, task: Task, work: WorkFn) -> None:
        """Execute one work function and record its outcome."""
        channel_id = task.channel_id
        start = time.monotonic()
        try:
            result = await work(task.abort)
        except asyncio.CancelledError:
            self._settle(task, TaskStatus.CANCELLED, error=CANCELLED_MESSAGE)
            raise
        except Exception as exc:
            if task.abort.is_set():
                self._settle(task, TaskStatus.CANCELLED, error=CANCELLED_MESSAGE)
            else:
                logger.error(
                    "Task %s failed: %s",
                    task.id[:8],
                    exc,
                    exc_info=True,
                    extra={"task_id": task.id, "channel_id": channel_id},
                )
                self._settle(
                    task, TaskStatus.FAILED, error=str(exc) or type(exc).__name__
                )
        else:
            if task.abort.is_set():
                self._settle(task, TaskStatus.CANCELLED, error=CANCELLED_MESSAGE)
            else:
                self._settle(task, TaskStatus.COMPLETED, result=result)
        finally:
            metrics.observe("queue.run_ms", (time.monotonic() - start) * 1000)
            self._work.pop(task.id, None)
            self._runners.pop(task.id, None)
            if self._active.get(channel_id) == task.id:
                del self._active[channel_id]
            self._process_next(channel_id)
            self._update_depth_gauge(channel_id)

    def _settle(
        self,
        task: Task,
        status: TaskStatus,
        *,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        if task.is_terminal:
            return
        task.transition(status, result=result, error=error)
        metrics.inc(f"queue.tasks.{status.value}")
        logger.info(
            "Task %s %s",
            task.id[:8],
            status.value,
            extra={
                "task_id": task.id,
                "channel_id": task.channel_id,
                "status": status.value,
            },
        )
        self._emit(TaskEventKind(status.value), task)

    # ─── Internal ─────────────────────────────────────────────────

    def _emit(self, kind: TaskEventKind, task: Task) -> None:
        self._bus.emit(
            kind.topic, TaskEvent(kind=kind, task=task, channel_id=task.channel_id)
        )

    def _remove_pending(self, task: Task) -> None:
        queue = self._queues.get(task.channel_id)
        if queue is None:
            return
        try:
            queue.remove(task.id)
        except ValueError:
            pass
        self._update_depth_gauge(task.channel_id)

    def _update_depth_gauge(self, channel_id: str) -> None:
        metrics.gauge_set(
            "queue.pending",
            self.get_queued_count(channel_id),
            labels={"channel": channel_id},
        )
