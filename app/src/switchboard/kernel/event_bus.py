"""
Event Bus — lightweight async pub/sub for kernel lifecycle events.

Two ways to observe a topic:
- Queue subscribers: subscribe() returns an asyncio.Queue, iterate with listen()
- Callback listeners: add_listener() registers a callable invoked on emit()

Design:
- Topic-based: publishers write to topics, subscribers listen on topics
- Each queue subscriber gets its own asyncio.Queue (no cross-talk)
- Non-blocking: emit() never waits on a subscriber
- A failing listener is logged and never breaks the publisher or other listeners
- Coroutine listeners are scheduled as tasks on the running loop

Topics used by the kernel:
- task.started / task.completed / task.failed / task.cancelled — TaskQueue

Usage:
    bus = EventBus()

    bus.add_listener("task.completed", lambda event: print(event.task.result))

    queue = bus.subscribe("task.failed")
    async for event in bus.listen(queue):
        ...

    bus.emit("task.completed", event)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, AsyncGenerator, Callable

logger = logging.getLogger(__name__)

# Sentinel to signal end of stream
_STREAM_END = object()

Listener = Callable[[Any], Any]


class EventBus:
    """
    Topic pub/sub with queue subscribers and callback listeners.

    Single event loop only. emit() is synchronous so state owners can
    publish at the exact point a transition happens.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        # Keep strong refs so scheduled listener coroutines aren't collected
        self._pending: set[asyncio.Task] = set()

    # ─── Publishing ───────────────────────────────────────────────

    def emit(self, topic: str, event: Any) -> int:
        """
        Deliver an event to every queue subscriber and listener of a topic.

        Returns the number of receivers that accepted the event.
        """
        delivered = 0
        for queue in list(self._subscribers.get(topic, [])):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "Event bus: subscriber queue full for topic %s, dropping event",
                    topic,
                )

        for listener in list(self._listeners.get(topic, [])):
            try:
                outcome = listener(event)
            except Exception:
                logger.exception("Event bus: listener failed on topic %s", topic)
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._pending.add(task)
                task.add_done_callback(self._on_listener_done)
            delivered += 1

        return delivered

    async def publish(self, topic: str, event: Any) -> int:
        """Async spelling of emit() for callers already in a coroutine."""
        return self.emit(topic, event)

    def publish_end(self, topic: str) -> None:
        """Signal end-of-stream to all queue subscribers of a topic."""
        for queue in self._subscribers.get(topic, []):
            try:
                queue.put_nowait(_STREAM_END)
            except asyncio.QueueFull:
                pass

    # ─── Queue subscribers ────────────────────────────────────────

    def subscribe(self, topic: str, maxsize: int = 1000) -> asyncio.Queue:
        """Subscribe to a topic. Returns a Queue that receives events."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers[topic].append(queue)
        logger.debug(
            "Subscribed to topic: %s (total: %d)", topic, len(self._subscribers[topic])
        )
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        """Remove a subscriber's queue. Safe to call twice."""
        queues = self._subscribers.get(topic, [])
        try:
            queues.remove(queue)
        except ValueError:
            return
        if not queues:
            del self._subscribers[topic]

    async def listen(self, queue: asyncio.Queue) -> AsyncGenerator[Any, None]:
        """Yield events from a subscriber queue until publish_end()."""
        while True:
            item = await queue.get()
            if item is _STREAM_END:
                break
            yield item

    # ─── Callback listeners ───────────────────────────────────────

    def add_listener(self, topic: str, listener: Listener) -> None:
        self._listeners[topic].append(listener)

    def remove_listener(self, topic: str, listener: Listener) -> None:
        """Remove a callback listener. Safe to call twice."""
        listeners = self._listeners.get(topic, [])
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            del self._listeners[topic]

    # ─── Introspection / cleanup ──────────────────────────────────

    def subscriber_count(self, topic: str) -> int:
        """Queue subscribers plus callback listeners for a topic."""
        return len(self._subscribers.get(topic, [])) + len(
            self._listeners.get(topic, [])
        )

    def active_topics(self) -> list[str]:
        topics = {t for t, subs in self._subscribers.items() if subs}
        topics.update(t for t, subs in self._listeners.items() if subs)
        return sorted(topics)

    def clear_topic(self, topic: str) -> None:
        """Drop every subscriber and listener of a topic."""
        self.publish_end(topic)
        self._subscribers.pop(topic, None)
        self._listeners.pop(topic, None)

    def clear(self) -> None:
        """Drop everything. Queue subscribers receive end-of-stream."""
        for topic in list(self._subscribers):
            self.publish_end(topic)
        self._subscribers.clear()
        self._listeners.clear()

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Event bus: async listener failed: %s", exc, exc_info=exc)
