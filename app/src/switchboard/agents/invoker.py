"""
Agent Invoker — runs the external reasoning agent (claude CLI) for one request.

One invocation = one subprocess:
    claude -p <prompt> --output-format stream-json --verbose
           --mcp-config <path> --allowedTools <tools...>
           [--resume <session_id>] [--system-prompt <text>]

Liveness:
  - Inactivity watchdog: no stdout for inactivity_timeout → terminate
  - Hard ceiling: running longer than max_duration → terminate, no matter what
  - Abort event: set by the caller → terminate

Terminate means SIGTERM to the agent's process group, then SIGKILL after
kill_grace seconds. The agent runs in its own session so tool processes it
starts die with it. Once stopped, the call returns within kill_grace plus
a short drain window even if something still holds the output pipe.

Errors (all AgentError):
  - AgentAbortedError: the caller asked to stop (wins over everything else)
  - AgentTimeoutError: a watchdog fired
  - AgentProcessError: could not spawn, or non-zero exit with no text
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import time
from collections import deque
from typing import Sequence

import switchboard.core.config as config_module
from switchboard.agents.stream import StreamParser
from switchboard.core.metrics import metrics
from switchboard.kernel.contracts import AgentRequest, AgentResult, SwitchboardError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
STDERR_TAIL_LINES = 20
# Extra wait past kill_grace for the pipes to close after a stop
STOP_DRAIN_SECONDS = 1.0


class AgentError(SwitchboardError):
    """Base class for agent invocation failures."""


class AgentAbortedError(AgentError):
    """The caller's abort event fired before the agent finished."""

    def __init__(self) -> None:
        super().__init__("Agent invocation aborted")


class AgentTimeoutError(AgentError):
    """A liveness watchdog killed the agent process."""

    def __init__(self, reason: str, seconds: float) -> None:
        if reason == "inactivity":
            message = f"Agent produced no output for {seconds:.0f}s"
        else:
            message = f"Agent exceeded maximum runtime of {seconds:.0f}s"
        super().__init__(message)
        self.reason = reason
        self.seconds = seconds


class AgentProcessError(AgentError):
    """The agent process could not start, or exited non-zero without output."""

    def __init__(
        self, message: str, exit_code: int | None = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class _Watchdog:
    """Timers and kill logic for one running process group."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        inactivity_timeout: float,
        max_duration: float,
        kill_grace: float,
    ) -> None:
        self._proc = proc
        self._loop = asyncio.get_running_loop()
        self._inactivity_timeout = inactivity_timeout
        self._kill_grace = kill_grace
        self.reason: str | None = None
        self.stopped = asyncio.Event()

        self._inactivity: asyncio.TimerHandle | None = None
        self._ceiling = self._loop.call_later(
            max_duration, self.stop, "max_duration"
        )
        self._force_kill: asyncio.TimerHandle | None = None
        self.touch()

    def touch(self) -> None:
        """Output arrived; restart the inactivity window."""
        if self.reason is not None:
            return
        if self._inactivity is not None:
            self._inactivity.cancel()
        self._inactivity = self._loop.call_later(
            self._inactivity_timeout, self.stop, "inactivity"
        )

    def stop(self, reason: str) -> None:
        """Terminate the process group, recording the first reason only."""
        if self.reason is not None:
            return
        self.reason = reason
        self.stopped.set()
        logger.warning("Terminating agent pid %s (%s)", self._proc.pid, reason)
        self._signal(signal.SIGTERM)
        self._force_kill = self._loop.call_later(self._kill_grace, self.kill)

    def kill(self) -> None:
        self._signal(signal.SIGKILL)

    def _signal(self, sig: int) -> None:
        # The agent leads its own session, so its pid is the group id.
        # Tool processes it spawned share the group and the stdout pipe.
        try:
            os.killpg(self._proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def clear(self) -> None:
        for handle in (self._inactivity, self._ceiling, self._force_kill):
            if handle is not None:
                handle.cancel()


class AgentInvoker:
    """
    Spawns the agent CLI and turns its stream-json output into an AgentResult.

    Usage:
        invoker = AgentInvoker()
        result = await invoker.invoke(
            AgentRequest(prompt="hi", mcp_config_path="mcp.json", on_token=print)
        )
    """

    def __init__(
        self,
        command: str | Sequence[str] | None = None,
        inactivity_timeout: float | None = None,
        max_duration: float | None = None,
        kill_grace: float | None = None,
        allowed_tools: Sequence[str] | None = None,
        cwd: str | None = None,
    ) -> None:
        cfg = config_module.config.agent
        command = command if command is not None else cfg.command
        self._command: list[str] = (
            shlex.split(command) if isinstance(command, str) else list(command)
        )
        self._inactivity_timeout = (
            inactivity_timeout
            if inactivity_timeout is not None
            else cfg.inactivity_timeout
        )
        self._max_duration = (
            max_duration if max_duration is not None else cfg.max_duration
        )
        self._kill_grace = kill_grace if kill_grace is not None else cfg.kill_grace
        self._allowed_tools = tuple(
            allowed_tools if allowed_tools is not None else cfg.allowed_tools
        )
        self._cwd = cwd if cwd is not None else (cfg.working_dir or None)

    def build_args(self, request: AgentRequest) -> list[str]:
        tools = request.allowed_tools or self._allowed_tools
        args = [
            "-p",
            request.prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--mcp-config",
            request.mcp_config_path,
        ]
        if tools:
            args += ["--allowedTools", *tools]
        if request.session_id:
            args += ["--resume", request.session_id]
        if request.system_prompt:
            args += ["--system-prompt", request.system_prompt]
        return args

    def build_env(self) -> dict[str, str]:
        # Nested runs refuse to start while CLAUDECODE is set
        env = dict(os.environ)
        env.pop("CLAUDECODE", None)
        return env

    async def invoke(self, request: AgentRequest) -> AgentResult:
        """Run the agent to completion. Raises AgentError subclasses on failure."""
        abort = request.abort
        if abort is not None and abort.is_set():
            raise AgentAbortedError()

        argv = [*self._command, *self.build_args(request)]
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                cwd=self._cwd,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            metrics.inc("agent.invocations", labels={"outcome": "spawn_error"})
            raise AgentProcessError(f"Agent command not found: {argv[0]}") from exc
        except OSError as exc:
            metrics.inc("agent.invocations", labels={"outcome": "spawn_error"})
            raise AgentProcessError(f"Agent failed to start: {exc}") from exc

        logger.info(
            "Agent started (pid=%s, resume=%s)",
            proc.pid,
            bool(request.session_id),
            extra={"session_id": request.session_id},
        )

        parser = StreamParser(on_token=request.on_token)
        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        watchdog = _Watchdog(
            proc, self._inactivity_timeout, self._max_duration, self._kill_grace
        )
        stderr_task = asyncio.create_task(self._drain_stderr(proc, stderr_tail))
        stdout_task = asyncio.create_task(self._read_stdout(proc, parser, watchdog))
        stop_task = asyncio.create_task(watchdog.stopped.wait())
        abort_task = (
            asyncio.create_task(self._watch_abort(abort, watchdog))
            if abort is not None
            else None
        )

        exit_code: int | None = None
        try:
            await asyncio.wait(
                {stdout_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if watchdog.reason is None:
                exit_code = stdout_task.result()
            elif not stdout_task.done():
                # Wait out SIGKILL escalation, but never on a pipe held open
                # by a process outside the group
                await asyncio.wait(
                    {stdout_task}, timeout=self._kill_grace + STOP_DRAIN_SECONDS
                )
        finally:
            watchdog.clear()
            for helper in (stop_task, abort_task):
                if helper is not None:
                    helper.cancel()
            if proc.returncode is None or not stdout_task.done():
                # Our own coroutine was cancelled, or the pipe never closed
                watchdog.kill()
            if not stdout_task.done():
                stdout_task.cancel()
            elif not stdout_task.cancelled() and stdout_task.exception() is not None:
                logger.debug("stdout reader ended with %s", stdout_task.exception())
            await self._finish_stderr(stderr_task)

        duration_ms = round((time.monotonic() - start) * 1000, 1)
        stderr_text = "\n".join(stderr_tail)

        if (abort is not None and abort.is_set()) or watchdog.reason == "aborted":
            metrics.inc("agent.invocations", labels={"outcome": "aborted"})
            logger.info("Agent aborted after %.0fms", duration_ms)
            raise AgentAbortedError()

        if watchdog.reason in ("inactivity", "max_duration"):
            metrics.inc("agent.invocations", labels={"outcome": "timeout"})
            seconds = (
                self._inactivity_timeout
                if watchdog.reason == "inactivity"
                else self._max_duration
            )
            raise AgentTimeoutError(watchdog.reason, seconds)

        if exit_code != 0 and not parser.text:
            metrics.inc("agent.invocations", labels={"outcome": "error"})
            logger.error(
                "Agent exited with code %s: %s", exit_code, stderr_text[-500:]
            )
            raise AgentProcessError(
                f"Agent exited with code {exit_code}"
                + (f": {stderr_text[-500:]}" if stderr_text else ""),
                exit_code=exit_code,
                stderr=stderr_text,
            )

        metrics.inc("agent.invocations", labels={"outcome": "success"})
        metrics.observe("agent.duration_ms", duration_ms)
        if parser.cost_usd is not None:
            metrics.inc("agent.cost_usd_micros", round(parser.cost_usd * 1_000_000))
        logger.info(
            "Agent finished in %.0fms (chars=%d, cost=%s)",
            duration_ms,
            len(parser.text),
            parser.cost_usd,
            extra={"session_id": parser.session_id, "duration_ms": duration_ms},
        )

        return AgentResult(
            text=parser.text,
            session_id=parser.session_id,
            cost_usd=parser.cost_usd,
            model=parser.model,
            duration_ms=duration_ms,
        )

    @staticmethod
    async def _read_stdout(
        proc: asyncio.subprocess.Process, parser: StreamParser, watchdog: _Watchdog
    ) -> int:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            watchdog.touch()
            parser.feed(chunk)
        parser.finish()
        return await proc.wait()

    @staticmethod
    async def _watch_abort(abort: asyncio.Event, watchdog: _Watchdog) -> None:
        await abort.wait()
        watchdog.stop("aborted")

    @staticmethod
    async def _drain_stderr(
        proc: asyncio.subprocess.Process, tail: deque[str]
    ) -> None:
        assert proc.stderr is not None
        async for raw in proc.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                tail.append(line)

    @staticmethod
    async def _finish_stderr(task: asyncio.Task) -> None:
        # A grandchild may keep the pipe open; don't hang on it
        try:
            await asyncio.wait_for(task, timeout=1.0)
        except asyncio.TimeoutError:
            task.cancel()
        except Exception as exc:
            logger.debug("stderr reader ended with %s", exc)
