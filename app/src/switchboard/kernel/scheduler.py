"""
Job Scheduler — cron-driven agent runs delivered to a chat channel.

Timers:
  Every job gets one one-shot timer (loop.call_later) for its next fire
  time. When the run finishes the job re-arms itself, re-resolving the cron
  expression against the current wall clock and the job's timezone. There
  is no fixed interval, so drift and DST changes never accumulate.

  A fire time that is already in the past when computed is never run
  immediately; the following occurrence is armed instead.

Overlap:
  A job id sits in the running set for the whole run. A timer that fires
  during a run is skipped with a warning; run_now() during a run raises
  JobAlreadyRunningError.

Side activities while a job runs (best-effort, failures swallowed):
  - typing indicator every typing_interval seconds
  - "still running" progress notice every progress_interval seconds

Scheduled runs call the AgentInvoker directly (never the TaskQueue) and
never resume a session.
"""

from __future__ import annotations

import asyncio
import html
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Coroutine

import switchboard.core.config as config_module
from switchboard.core.metrics import metrics
from switchboard.kernel.contracts import (
    AgentRequest,
    JobRunStatus,
    ScheduledJob,
    SwitchboardError,
    utc_now,
)
from switchboard.kernel.cron import (
    CronEvaluationError,
    following_fire_time,
    next_fire_time,
)
from switchboard.kernel.delivery import Delivery
from switchboard.kernel.interface import JobStore

if TYPE_CHECKING:
    from switchboard.agents.invoker import AgentInvoker

logger = logging.getLogger(__name__)

SCHEDULED_SYSTEM_PROMPT = (
    'You are executing a scheduled task named "{name}". This task runs '
    "automatically on a schedule. Be concise and focused on the task. "
    "Deliver actionable results."
)

START_TEMPLATE = '⏳ Job "<b>{name}</b>" started...'
PROGRESS_TEMPLATE = '⏳ Job "<b>{name}</b>" running for {minutes} min...'
FAILURE_TEMPLATE = '❌ Job "<b>{name}</b>" failed:\n<code>{error}</code>'


class JobNotFoundError(SwitchboardError):
    """No job with that id in the store."""


class JobAlreadyRunningError(SwitchboardError):
    """run_now() was called while the job is executing."""


class JobScheduler:
    """
    Arms, fires, and re-arms cron timers for scheduled jobs.

    Usage:
        scheduler = JobScheduler(store, invoker, delivery)
        await scheduler.start()
        scheduler.schedule_job(job)       # after create/update
        scheduler.unschedule_job(job.id)  # after delete/disable
        await scheduler.run_now(job.id)   # manual trigger, returns at once
    """

    def __init__(
        self,
        store: JobStore,
        invoker: AgentInvoker,
        delivery: Delivery,
        mcp_config_path: str | None = None,
        typing_interval: float | None = None,
        progress_interval: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        cfg = config_module.config
        self._store = store
        self._invoker = invoker
        self._delivery = delivery
        self._mcp_config_path = (
            mcp_config_path
            if mcp_config_path is not None
            else cfg.agent.mcp_config_path
        )
        self._typing_interval = (
            typing_interval
            if typing_interval is not None
            else cfg.scheduler.typing_interval
        )
        self._progress_interval = (
            progress_interval
            if progress_interval is not None
            else cfg.scheduler.progress_interval
        )
        self._clock = clock or utc_now

        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._next_runs: dict[str, datetime] = {}
        self._running_jobs: set[str] = set()
        # Strong refs for fire-and-forget work (runs, store writes)
        self._background: set[asyncio.Task] = set()
        self._started = False
        self._stopped = False

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Arm a timer for every enabled job in the store."""
        if self._started:
            return
        self._started = True
        self._stopped = False

        jobs = await self._store.list_enabled()
        for job in jobs:
            self.schedule_job(job)

        logger.info("Scheduler started with %d active jobs", len(jobs))

    async def stop(self) -> None:
        """Cancel every timer. Runs already in flight finish but don't re-arm."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._next_runs.clear()
        self._started = False
        self._stopped = True
        logger.info("Scheduler stopped")

    # ─── Timers ───────────────────────────────────────────────────

    def schedule_job(self, job: ScheduledJob) -> datetime | None:
        """
        (Re)arm the timer for a job. Returns the armed fire time, or None.

        Invalid cron expressions are logged and leave the job unscheduled.
        """
        self.unschedule_job(job.id)
        if not job.enabled:
            return None

        try:
            next_run = next_fire_time(job.cron_expression, job.timezone, self._clock())
        except CronEvaluationError as e:
            logger.error(
                "Invalid cron for job %s (%s): %s",
                job.id,
                job.cron_expression,
                e,
                extra={"job_id": job.id},
            )
            metrics.inc("scheduler.cron_errors")
            return None

        now = self._clock()
        delay = (next_run - now).total_seconds()
        if delay <= 0:
            logger.info(
                'Job "%s" missed its slot at %s, scheduling next occurrence',
                job.name,
                next_run.isoformat(),
                extra={"job_id": job.id},
            )
            try:
                next_run = following_fire_time(
                    job.cron_expression, job.timezone, max(next_run, now)
                )
            except CronEvaluationError as e:
                logger.error("Cron re-evaluation failed for job %s: %s", job.id, e)
                return None
            delay = (next_run - now).total_seconds()
            if delay <= 0:
                return None

        loop = asyncio.get_running_loop()
        self._timers[job.id] = loop.call_later(delay, self._on_timer, job)
        self._next_runs[job.id] = next_run
        self._spawn(
            self._persist(job.id, next_run_at=next_run), name=f"job-next-{job.id[:8]}"
        )

        logger.info(
            'Job "%s" scheduled for %s',
            job.name,
            next_run.isoformat(),
            extra={"job_id": job.id},
        )
        return next_run

    def unschedule_job(self, job_id: str) -> None:
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        self._next_runs.pop(job_id, None)

    def _on_timer(self, job: ScheduledJob) -> None:
        self._timers.pop(job.id, None)
        self._next_runs.pop(job.id, None)
        self._spawn(self._run_scheduled(job), name=f"job-run-{job.id[:8]}")

    async def _run_scheduled(self, job: ScheduledJob) -> None:
        # Pick up edits made since the timer was armed
        fresh = await self._store.get(job.id)
        if fresh is None or not fresh.enabled:
            logger.info("Job %s removed or disabled, not running", job.id)
            return
        await self.execute_job(fresh)

    # ─── Execution ────────────────────────────────────────────────

    async def run_now(self, job_id: str) -> None:
        """Start a job immediately without waiting for it to finish."""
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job_id in self._running_jobs:
            raise JobAlreadyRunningError(f'Job "{job.name}" is already running')

        # Claim the marker before yielding so a second call can't slip in
        self._running_jobs.add(job_id)
        self._spawn(self._execute(job), name=f"job-now-{job_id[:8]}")
        logger.info('Job "%s" triggered manually', job.name, extra={"job_id": job_id})

    async def execute_job(self, job: ScheduledJob) -> None:
        """Run a job unless a run of the same job is already in flight."""
        if job.id in self._running_jobs:
            logger.warning(
                'Job "%s" already running, skipping', job.name, extra={"job_id": job.id}
            )
            metrics.inc("scheduler.runs.skipped")
            return
        self._running_jobs.add(job.id)
        await self._execute(job)

    async def _execute(self, job: ScheduledJob) -> None:
        """Body of a run. The caller has already claimed the running marker."""
        logger.info("Executing job: %s (%s)", job.name, job.id, extra={"job_id": job.id})
        started = time.monotonic()
        status = JobRunStatus.SUCCESS
        error_msg: str | None = None
        side_tasks: list[asyncio.Task] = []
        name = html.escape(job.name)

        try:
            await self._persist(job.id, last_run_status=JobRunStatus.RUNNING)
            await self._delivery.send_safe(
                job.platform, job.channel_id, START_TEMPLATE.format(name=name)
            )

            side_tasks.append(asyncio.create_task(self._typing_loop(job)))
            side_tasks.append(asyncio.create_task(self._progress_loop(job, started)))

            try:
                result = await self._invoker.invoke(
                    AgentRequest(
                        prompt=job.prompt,
                        system_prompt=SCHEDULED_SYSTEM_PROMPT.format(name=job.name),
                        mcp_config_path=self._mcp_config_path,
                    )
                )
                await self._delivery.send(job.platform, job.channel_id, result.text)
                logger.info(
                    'Job "%s" completed in %.0fms',
                    job.name,
                    (time.monotonic() - started) * 1000,
                    extra={"job_id": job.id, "status": "success"},
                )
            except Exception as exc:
                status = JobRunStatus.ERROR
                error_msg = str(exc) or type(exc).__name__
                logger.error(
                    'Job "%s" failed: %s',
                    job.name,
                    error_msg,
                    extra={"job_id": job.id, "status": "error"},
                )
                await self._delivery.send_safe(
                    job.platform,
                    job.channel_id,
                    FAILURE_TEMPLATE.format(name=name, error=html.escape(error_msg)),
                )
        finally:
            self._running_jobs.discard(job.id)
            for task in side_tasks:
                task.cancel()
            if side_tasks:
                await asyncio.gather(*side_tasks, return_exceptions=True)

        metrics.inc("scheduler.runs", labels={"status": status.value})
        metrics.observe("scheduler.run_ms", (time.monotonic() - started) * 1000)

        await self._persist(
            job.id,
            last_run_at=utc_now(),
            last_run_status=status,
            last_run_error=error_msg,
        )

        if self._stopped:
            return
        refreshed = await self._store.get(job.id)
        if refreshed is not None and refreshed.enabled:
            self.schedule_job(refreshed)

    async def _typing_loop(self, job: ScheduledJob) -> None:
        if not self._delivery.supports_typing(job.platform):
            return
        while True:
            await self._delivery.send_typing_safe(job.platform, job.channel_id)
            await asyncio.sleep(self._typing_interval)

    async def _progress_loop(self, job: ScheduledJob, started: float) -> None:
        name = html.escape(job.name)
        while True:
            await asyncio.sleep(self._progress_interval)
            minutes = round((time.monotonic() - started) / 60)
            await self._delivery.send_safe(
                job.platform,
                job.channel_id,
                PROGRESS_TEMPLATE.format(name=name, minutes=minutes),
            )

    # ─── Introspection ────────────────────────────────────────────

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running_jobs

    def scheduled_job_ids(self) -> list[str]:
        return sorted(self._timers)

    def next_run(self, job_id: str) -> datetime | None:
        return self._next_runs.get(job_id)

    def health_check(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "scheduled": len(self._timers),
            "running": sorted(self._running_jobs),
            "next_runs": {
                job_id: at.astimezone(timezone.utc).isoformat()
                for job_id, at in self._next_runs.items()
            },
        }

    # ─── Internal ─────────────────────────────────────────────────

    async def _persist(self, job_id: str, **fields: Any) -> None:
        try:
            await self._store.update(job_id, **fields)
        except Exception as e:
            logger.error(
                "Failed to persist %s for job %s: %s",
                ",".join(fields),
                job_id,
                e,
                extra={"job_id": job_id},
            )

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background scheduler task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=exc,
            )
