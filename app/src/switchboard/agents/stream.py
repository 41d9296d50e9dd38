"""
Stream Parser — interprets the agent CLI's newline-delimited JSON output.

Recognised events (keyed by "type"):
    {"type": "system", "subtype": "init", "session_id": ...}
    {"type": "assistant", "message": {"id", "model", "content": [{"type": "text", "text": ...}]}}
    {"type": "result", "session_id", "total_cost_usd", "model", "result"}

Assistant text blocks are cumulative within one message id. Only the
suffix past what was already seen is forwarded, so a caller streaming
tokens never sees a prefix twice. A new message id (the agent started a
new turn, e.g. after a tool call) resets the counter.

Lines that aren't valid JSON objects are skipped. Interleaved stderr noise
or a half-written line at shutdown is normal.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class StreamParser:
    """Incremental parser; feed() raw stdout bytes, then finish()."""

    def __init__(self, on_token: Callable[[str], Any] | None = None) -> None:
        self._on_token = on_token
        # Coroutine on_token callbacks run as tasks; kept here until done
        self._pending: set[asyncio.Future] = set()
        self._buffer = ""
        self._pending_bytes = b""

        self.text = ""
        self.session_id = ""
        self.cost_usd: float | None = None
        self.model: str | None = None

        self._message_id: str | None = None
        self._seen_length = 0

    def feed(self, chunk: bytes) -> None:
        """Consume a chunk of stdout. Complete lines are processed immediately."""
        data = self._pending_bytes + chunk
        try:
            decoded = data.decode("utf-8")
            self._pending_bytes = b""
        except UnicodeDecodeError as exc:
            # Multi-byte character split across reads; keep the tail for later
            if exc.start >= len(data) - 3:
                decoded = data[: exc.start].decode("utf-8")
                self._pending_bytes = data[exc.start :]
            else:
                decoded = data.decode("utf-8", errors="replace")
                self._pending_bytes = b""

        self._buffer += decoded
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self.handle_line(line)

    def finish(self) -> None:
        """Parse whatever is left after the stream closed."""
        if self._pending_bytes:
            self._buffer += self._pending_bytes.decode("utf-8", errors="replace")
            self._pending_bytes = b""
        remainder, self._buffer = self._buffer, ""
        if remainder.strip():
            self.handle_line(remainder)

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream line: %.120s", line)
            return
        if not isinstance(event, dict):
            return

        event_type = event.get("type")
        if event_type == "system" and event.get("subtype") == "init":
            self.session_id = event.get("session_id") or ""
        elif event_type == "assistant":
            self._handle_assistant(event.get("message"))
        elif event_type == "result":
            self._handle_result(event)

    def _handle_assistant(self, message: Any) -> None:
        if not isinstance(message, dict):
            return
        content = message.get("content")
        if not isinstance(content, list):
            return

        if message.get("model"):
            self.model = message["model"]

        message_id = message.get("id") or ""
        if message_id != self._message_id:
            self._message_id = message_id
            self._seen_length = 0

        for block in content:
            if not isinstance(block, dict) or block.get("type") != "text":
                continue
            text = block.get("text")
            if not isinstance(text, str) or not text:
                continue
            delta = text[self._seen_length :]
            if not delta:
                continue
            self._seen_length = len(text)
            self.text += delta
            self._emit(delta)

    def _handle_result(self, event: dict[str, Any]) -> None:
        self.session_id = event.get("session_id") or self.session_id
        cost = event.get("total_cost_usd")
        if isinstance(cost, (int, float)):
            self.cost_usd = float(cost)
        if event.get("model"):
            self.model = event["model"]
        if event.get("result") and not self.text:
            self.text = str(event["result"])

    def _emit(self, delta: str) -> None:
        if self._on_token is None:
            return
        try:
            outcome = self._on_token(delta)
        except Exception:
            logger.exception("on_token callback failed")
            return
        if inspect.isawaitable(outcome):
            future = asyncio.ensure_future(outcome)
            self._pending.add(future)
            future.add_done_callback(self._on_token_done)

    def _on_token_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("on_token callback failed: %s", exc, exc_info=exc)
