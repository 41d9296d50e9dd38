"""
Kernel Interface — collaborators the kernel consumes but does not own.

- JobStore: persistence for ScheduledJob records (schema lives elsewhere)
- MessageSender / TypingSender: per-platform delivery callables

InMemoryJobStore is the process-local implementation used when no database
is wired in, and by the tests.
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Protocol

from switchboard.kernel.contracts import ScheduledJob, utc_now


class MessageSender(Protocol):
    def __call__(self, channel_id: str, text: str) -> Awaitable[None]: ...


class TypingSender(Protocol):
    def __call__(self, channel_id: str) -> Awaitable[None]: ...


class JobStore(ABC):
    """
    Abstract store of scheduled jobs.

    The scheduler only reads jobs and writes back run bookkeeping
    (last_run_*, next_run_at). Creating and validating jobs is the job of
    the management surface.
    """

    @abstractmethod
    async def list_enabled(self) -> list[ScheduledJob]:
        """All jobs with enabled=True."""
        ...

    @abstractmethod
    async def get(self, job_id: str) -> ScheduledJob | None:
        """Fresh copy of a job, or None if it no longer exists."""
        ...

    @abstractmethod
    async def update(self, job_id: str, **fields: Any) -> None:
        """Persist a subset of ScheduledJob fields. Unknown ids are ignored."""
        ...


class InMemoryJobStore(JobStore):
    """Dict-backed JobStore. Hands out copies so callers can't alias records."""

    def __init__(self, jobs: list[ScheduledJob] | None = None) -> None:
        self._jobs: dict[str, ScheduledJob] = {}
        for job in jobs or []:
            self.add(job)

    def add(self, job: ScheduledJob) -> None:
        self._jobs[job.id] = dataclasses.replace(job)

    def remove(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def all(self) -> list[ScheduledJob]:
        return [dataclasses.replace(j) for j in self._jobs.values()]

    async def list_enabled(self) -> list[ScheduledJob]:
        return [dataclasses.replace(j) for j in self._jobs.values() if j.enabled]

    async def get(self, job_id: str) -> ScheduledJob | None:
        job = self._jobs.get(job_id)
        return dataclasses.replace(job) if job else None

    async def update(self, job_id: str, **fields: Any) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        fields.setdefault("updated_at", utc_now())
        self._jobs[job_id] = dataclasses.replace(job, **fields)
