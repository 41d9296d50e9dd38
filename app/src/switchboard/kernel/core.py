"""
Kernel Core — wires the queue, invoker, scheduler and delivery together.

Architecture:
  Connector → KernelCore.handle_message() → TaskQueue (per channel)
                                               └─ work fn → AgentInvoker
  TaskQueue events → KernelCore listeners → Delivery (typing, result, error)
  JobScheduler → AgentInvoker → Delivery   (never through the queue)

Conversation continuity: the agent's session id for each channel is kept
in memory and passed back as the resume token on the next message.

Web tasks are left alone by the delivery listeners; the web surface
streams its reply through on_token.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

import switchboard.core.config as config_module
from switchboard.agents.invoker import AgentInvoker
from switchboard.core.metrics import metrics
from switchboard.kernel.contracts import (
    AgentRequest,
    Task,
    TaskEvent,
    TaskEventKind,
    TaskMetadata,
)
from switchboard.kernel.delivery import Delivery
from switchboard.kernel.event_bus import EventBus
from switchboard.kernel.interface import InMemoryJobStore, JobStore
from switchboard.kernel.scheduler import JobScheduler
from switchboard.kernel.task_queue import TaskQueue

logger = logging.getLogger(__name__)

WEB_PLATFORM = "web"
PREVIEW_CHARS = 100

BASE_SYSTEM_PROMPT = """You are a helpful personal AI assistant. You have access to various tools (skills) that you can use to help the user. Be concise and helpful. When you use tools, explain what you're doing briefly.

Safety rules:
- Never run destructive commands (rm -rf, drop tables, etc.)
- Never modify files outside the project directory
- Never access credentials, tokens, or secrets directly
- Never use sudo or run commands as root
- Explain any risky or potentially destructive command before running it
- Prefer read-only operations when possible"""

PLATFORM_FORMAT_INSTRUCTIONS: dict[str, str] = {
    "telegram": """
Response formatting: You are responding on Telegram. Use Telegram HTML formatting:
- <b>bold</b> for emphasis
- <i>italic</i> for secondary emphasis
- <code>inline code</code> for technical terms
- <pre>code blocks</pre> for multi-line code
- Do NOT use Markdown syntax (no **, no ##, no ```)
- Keep responses concise, Telegram messages should be scannable
- Use line breaks for readability, avoid long walls of text""",
    WEB_PLATFORM: """
Response formatting: You are responding on a web interface that renders Markdown.
Use standard Markdown: **bold**, *italic*, `code`, ```code blocks```, ## headings, - lists.""",
}

FAILURE_REPLY = "Sorry, something went wrong: {error}"
CANCELLED_REPLY = "Task was cancelled."


def system_prompt_for(platform: str) -> str:
    """Base prompt plus formatting rules for the platform (Markdown by default)."""
    instructions = PLATFORM_FORMAT_INSTRUCTIONS.get(
        platform, PLATFORM_FORMAT_INSTRUCTIONS[WEB_PLATFORM]
    )
    return BASE_SYSTEM_PROMPT + instructions


@dataclass(frozen=True)
class InboundMessage:
    """A normalized chat message from any connector."""

    channel_id: str
    text: str
    platform: str
    user_name: str | None = None


class KernelCore:
    """
    The kernel facade.

    Handles:
    - Lifecycle of queue cleanup and the job scheduler
    - Turning inbound messages into queued agent invocations
    - Per-channel resume tokens
    - Typing indicators while a channel's task runs
    - Delivering results, failures and cancellations to non-web platforms
    """

    def __init__(
        self,
        invoker: AgentInvoker | None = None,
        delivery: Delivery | None = None,
        job_store: JobStore | None = None,
        event_bus: EventBus | None = None,
        task_queue: TaskQueue | None = None,
        scheduler: JobScheduler | None = None,
        mcp_config_path: str | None = None,
        typing_interval: float | None = None,
    ) -> None:
        cfg = config_module.config
        self.event_bus = event_bus or EventBus()
        self.invoker = invoker or AgentInvoker()
        self.delivery = delivery or Delivery()
        self.job_store = job_store or InMemoryJobStore()
        self.task_queue = task_queue or TaskQueue(event_bus=self.event_bus)
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
        self.scheduler = scheduler or JobScheduler(
            store=self.job_store,
            invoker=self.invoker,
            delivery=self.delivery,
            mcp_config_path=self._mcp_config_path,
        )

        # channel_id → agent session id to resume
        self._sessions: dict[str, str] = {}
        # channel_id → (task id, typing indicator loop)
        self._typing: dict[str, tuple[str, asyncio.Task]] = {}
        self._deliveries: set[asyncio.Task] = set()
        self._listeners: list[tuple[TaskEventKind, Callable[[TaskEvent], Any]]] = [
            (TaskEventKind.STARTED, self._on_started),
            (TaskEventKind.COMPLETED, self._on_completed),
            (TaskEventKind.FAILED, self._on_failed),
            (TaskEventKind.CANCELLED, self._on_cancelled),
        ]
        self._running = False

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        for kind, listener in self._listeners:
            self.task_queue.on(kind, listener)
        self.task_queue.start()
        await self.scheduler.start()
        self._running = True
        logger.info("Kernel started (platforms: %s)", self.delivery.platforms())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        for _, loop_task in self._typing.values():
            loop_task.cancel()
        self._typing.clear()

        await self.scheduler.stop()
        for kind, listener in self._listeners:
            self.task_queue.off(kind, listener)
        self.task_queue.shutdown()
        logger.info("Kernel stopped")

    # ─── Messages ─────────────────────────────────────────────────

    def handle_message(
        self,
        message: InboundMessage,
        on_token: Callable[[str], Any] | None = None,
    ) -> Task:
        """Queue an agent turn for the message's channel and return its Task."""
        channel_id = message.channel_id

        async def work(abort: asyncio.Event) -> str:
            result = await self.invoker.invoke(
                AgentRequest(
                    prompt=message.text,
                    mcp_config_path=self._mcp_config_path,
                    system_prompt=system_prompt_for(message.platform),
                    session_id=self._sessions.get(channel_id),
                    on_token=on_token,
                    abort=abort,
                )
            )
            if result.session_id:
                self._sessions[channel_id] = result.session_id
            return result.text

        metrics.inc("kernel.messages", labels={"platform": message.platform})
        return self.task_queue.enqueue(
            channel_id,
            work,
            TaskMetadata(
                message_preview=message.text[:PREVIEW_CHARS],
                platform=message.platform,
                user_name=message.user_name,
            ),
        )

    def cancel_task(self, task_id: str) -> bool:
        return self.task_queue.cancel(task_id)

    def session_for(self, channel_id: str) -> str | None:
        return self._sessions.get(channel_id)

    def reset_session(self, channel_id: str) -> bool:
        """Forget the channel's resume token. Returns True if one existed."""
        existed = self._sessions.pop(channel_id, None) is not None
        if existed:
            logger.info(
                "Session reset for channel %s",
                channel_id,
                extra={"channel_id": channel_id},
            )
        return existed

    # ─── Task listeners ───────────────────────────────────────────


    def _on_started(self, event: TaskEvent) -> None:
        platform = event.task.metadata.platform
        if not platform or platform == WEB_PLATFORM:
            return
        if not self.delivery.supports_typing(platform):
            return
        previous = self._typing.pop(event.channel_id, None)
        if previous is not None:
            previous[1].cancel()
        loop_task = asyncio.create_task(
            self._typing_loop(platform, event.channel_id),
            name=f"typing-{event.channel_id}",
        )
        self._typing[event.channel_id] = (event.task.id, loop_task)

    def _on_completed(self, event: TaskEvent) -> None:
        self._stop_typing(event)
        if event.task.result:
            self._deliver(event, event.task.result)

    def _on_failed(self, event: TaskEvent) -> None:
        self._stop_typing(event)
        error = event.task.error or "Unknown error"
        self._deliver(event, FAILURE_REPLY.format(error=error))

    def _on_cancelled(self, event: TaskEvent) -> None:
        self._stop_typing(event)
        self._deliver(event, CANCELLED_REPLY)

    # ─── Internal ─────────────────────────────────────────────────

    def _stop_typing(self, event: TaskEvent) -> None:
        # The next task on the channel may already have started its own loop
        entry = self._typing.get(event.channel_id)
        if entry is not None and entry[0] == event.task.id:
            del self._typing[event.channel_id]
            entry[1].cancel()

    def _deliver(self, event: TaskEvent, text: str) -> None:
        platform = event.task.metadata.platform
        if not platform or platform == WEB_PLATFORM:
            return
        task = asyncio.create_task(self._send_reply(event, platform, text))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _send_reply(self, event: TaskEvent, platform: str, text: str) -> None:
        ok = await self.delivery.send_safe(platform, event.channel_id, text)
        if not ok:
            metrics.inc("kernel.delivery_failures", labels={"platform": platform})
            logger.error(
                "Failed to deliver %s reply for task %s",
                event.kind.value,
                event.task.id[:8],
                extra={"task_id": event.task.id, "channel_id": event.channel_id},
            )

    async def _typing_loop(self, platform: str, channel_id: str) -> None:
        while True:
            await self.delivery.send_typing_safe(platform, channel_id)
            await asyncio.sleep(self._typing_interval)

    # ─── Health ───────────────────────────────────────────────────

    def health_check(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "sessions": len(self._sessions),
            "typing": sorted(self._typing),
            "queue": self.task_queue.health_check(),
            "scheduler": self.scheduler.health_check(),
            "metrics": metrics.snapshot(),
        }
