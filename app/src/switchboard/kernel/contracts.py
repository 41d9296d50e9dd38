"""
Kernel Contracts — data structures shared by the queue, invoker and scheduler.

These contracts define the interface between:
- Connectors / management surfaces (enqueue messages, manage jobs)
- Kernel (queues, schedules, invokes the agent)
- Delivery (sends text back to a platform)

Requests and results are frozen. Task and ScheduledJob are mutable records,
but a Task is only ever mutated by the TaskQueue that owns it.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import switchboard.core.config as config_module


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def default_job_timezone() -> str:
    return config_module.config.scheduler.default_timezone


class SwitchboardError(Exception):
    """Base class for every error raised by the kernel."""


class InvalidTransitionError(SwitchboardError):
    """Raised when a Task is moved backwards or out of a terminal state."""


class TaskStatus(str, Enum):
    """Lifecycle state of a queued unit of work."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


# Allowed moves. queued→failed only happens for the synthesized overflow Task.
_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset(
        {TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED}
    ),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class TaskEventKind(str, Enum):
    """Lifecycle events broadcast by the TaskQueue."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def topic(self) -> str:
        return f"task.{self.value}"


@dataclass(frozen=True)
class TaskMetadata:
    """Optional observability data carried alongside a Task."""

    message_preview: str | None = None
    platform: str | None = None
    user_name: str | None = None


# (abort) -> result text. May raise.
WorkFn = Callable[[asyncio.Event], Awaitable[str]]


@dataclass(eq=False)
class Task:
    """One queued / running / finished unit of work for one channel."""

    channel_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TaskStatus = TaskStatus.QUEUED
    result: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    abort: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    metadata: TaskMetadata = field(default_factory=TaskMetadata)

    def transition(
        self,
        status: TaskStatus,
        *,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        """Move to ``status``. Raises InvalidTransitionError on illegal moves."""
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Task {self.id} cannot go from {self.status.value} to {status.value}"
            )
        self.status = status
        if status == TaskStatus.RUNNING:
            self.started_at = utc_now()
        if status == TaskStatus.COMPLETED:
            self.result = result
        if error is not None:
            self.error = error
        if status.is_terminal and self.completed_at is None:
            self.completed_at = utc_now()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "message_preview": self.metadata.message_preview,
            "platform": self.metadata.platform,
            "user_name": self.metadata.user_name,
        }


@dataclass(frozen=True)
class TaskEvent:
    """Payload delivered to TaskQueue listeners."""

    kind: TaskEventKind
    task: Task
    channel_id: str


class JobRunStatus(str, Enum):
    """Outcome recorded on a ScheduledJob after each run."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ScheduledJob:
    """
    A recurring instruction for the agent.

    Owned by the external job store; the scheduler only reads it and
    writes back the last-run / next-run fields through the store.
    """

    id: str
    name: str
    prompt: str
    cron_expression: str
    platform: str
    channel_id: str
    timezone: str = field(default_factory=default_job_timezone)
    enabled: bool = True
    last_run_at: datetime | None = None
    last_run_status: JobRunStatus | None = None
    last_run_error: str | None = None
    next_run_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class AgentRequest:
    """Input of one agent invocation."""

    prompt: str
    mcp_config_path: str
    system_prompt: str | None = None
    session_id: str | None = None  # resume token
    on_token: Callable[[str], Any] | None = None
    abort: asyncio.Event | None = None
    allowed_tools: tuple[str, ...] | None = None


@dataclass(frozen=True)
class AgentResult:
    """Output of one agent invocation."""

    text: str
    session_id: str
    cost_usd: float | None = None
    model: str | None = None
    duration_ms: float = 0.0
