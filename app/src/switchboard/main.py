"""
Switchboard — runs the orchestration kernel until SIGINT/SIGTERM.

Connectors and the job management surface attach to the KernelCore built
here; this entrypoint only wires delivery and keeps the loop alive.

Run: python -m switchboard.main
"""

from __future__ import annotations

import asyncio
import logging
import signal

from switchboard.core.config import config
from switchboard.core.logging import setup_logging
from switchboard.kernel.core import KernelCore
from switchboard.kernel.delivery import Delivery, TelegramSender

logger = logging.getLogger("switchboard")


def build_kernel() -> KernelCore:
    delivery = Delivery()
    if config.telegram.bot_token:
        telegram = TelegramSender(
            bot_token=config.telegram.bot_token,
            api_base=config.telegram.api_base,
            timeout=config.telegram.timeout,
        )
        delivery.register("telegram", telegram.send_message, typing=telegram.send_typing)
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set, Telegram delivery disabled")
    return KernelCore(delivery=delivery)


async def run() -> None:
    kernel = build_kernel()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops lack signal handlers
            pass

    await kernel.start()
    logger.info(
        "Switchboard running (agent=%s, mcp=%s)",
        config.agent.command,
        config.agent.mcp_config_path,
    )
    try:
        await stop.wait()
    finally:
        await kernel.stop()


def main() -> None:
    setup_logging()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
