"""
Kernel Package — channel queueing and cron scheduling for agent runs.

Architecture:
  KernelCore (facade) → TaskQueue (per-channel FIFO) → AgentInvoker
                      → JobScheduler (cron timers)   → AgentInvoker → Delivery

KernelCore lives in switchboard.kernel.core and is imported from there.
"""

from switchboard.kernel.contracts import (
    AgentRequest,
    AgentResult,
    JobRunStatus,
    ScheduledJob,
    SwitchboardError,
    Task,
    TaskEvent,
    TaskEventKind,
    TaskMetadata,
    TaskStatus,
)
from switchboard.kernel.event_bus import EventBus
from switchboard.kernel.scheduler import (
    JobAlreadyRunningError,
    JobNotFoundError,
    JobScheduler,
)
from switchboard.kernel.task_queue import QueueOverflowError, TaskQueue

__all__ = [
    # Contracts
    "Task",
    "TaskStatus",
    "TaskEvent",
    "TaskEventKind",
    "TaskMetadata",
    "ScheduledJob",
    "JobRunStatus",
    "AgentRequest",
    "AgentResult",
    "SwitchboardError",
    # Queue
    "TaskQueue",
    "QueueOverflowError",
    "EventBus",
    # Scheduler
    "JobScheduler",
    "JobNotFoundError",
    "JobAlreadyRunningError",
]
