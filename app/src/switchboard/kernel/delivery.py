"""
Delivery — sends text (and typing indicators) back to a platform channel.

The kernel only knows platform names. Each platform registers a sender:

    delivery = Delivery()
    telegram = TelegramSender(bot_token="...")
    delivery.register("telegram", telegram.send_message, typing=telegram.send_typing)

    await delivery.send("telegram", "12345", "Hello")

Unregistered platforms are a silent no-op (web sessions stream their own
reply). The *_safe variants swallow and log failures for best-effort
notices that must never break the caller.
"""

from __future__ import annotations

import logging

import httpx

from switchboard.kernel.interface import MessageSender, TypingSender

logger = logging.getLogger(__name__)

TELEGRAM_MAX_MESSAGE = 4096


class Delivery:
    """Registry of per-platform message and typing senders."""

    def __init__(self) -> None:
        self._senders: dict[str, MessageSender] = {}
        self._typing: dict[str, TypingSender] = {}

    def register(
        self,
        platform: str,
        sender: MessageSender,
        typing: TypingSender | None = None,
    ) -> None:
        self._senders[platform] = sender
        if typing is not None:
            self._typing[platform] = typing
        logger.info("Delivery registered for platform %s", platform)

    def platforms(self) -> list[str]:
        return sorted(self._senders)

    def supports_typing(self, platform: str) -> bool:
        return platform in self._typing

    async def send(self, platform: str, channel_id: str, text: str) -> None:
        """Send text. Raises whatever the platform sender raises."""
        sender = self._senders.get(platform)
        if sender is None:
            logger.debug("No sender for platform %s, dropping message", platform)
            return
        await sender(channel_id, text)

    async def send_typing(self, platform: str, channel_id: str) -> None:
        typing = self._typing.get(platform)
        if typing is None:
            return
        await typing(channel_id)

    async def send_safe(self, platform: str, channel_id: str, text: str) -> bool:
        try:
            await self.send(platform, channel_id, text)
            return True
        except Exception as e:
            logger.warning(
                "Delivery to %s:%s failed: %s",
                platform,
                channel_id,
                e,
                extra={"platform": platform, "channel_id": channel_id},
            )
            return False

    async def send_typing_safe(self, platform: str, channel_id: str) -> None:
        try:
            await self.send_typing(platform, channel_id)
        except Exception as e:
            logger.debug("Typing indicator to %s:%s failed: %s", platform, channel_id, e)


def split_message(text: str, limit: int = TELEGRAM_MAX_MESSAGE) -> list[str]:
    """Split text into chunks of at most ``limit`` chars, preferring newlines."""
    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    if remaining:
        chunks.append(remaining)
    return chunks


class TelegramSender:
    """Telegram Bot API adapter (sendMessage / sendChatAction)."""

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
    ) -> None:
        self._base = f"{api_base.rstrip('/')}/bot{bot_token}"
        self._timeout = timeout

    async def send_message(self, channel_id: str, text: str) -> None:
        if not text:
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for chunk in split_message(text):
                resp = await client.post(
                    f"{self._base}/sendMessage",
                    json={"chat_id": channel_id, "text": chunk, "parse_mode": "HTML"},
                )
                resp.raise_for_status()

    async def send_typing(self, channel_id: str) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                f"{self._base}/sendChatAction",
                json={"chat_id": channel_id, "action": "typing"},
            )
            resp.raise_for_status()
