"""
Switchboard Logging — colorized for dev, JSON for production.

Features:
- Color formatter for dev mode (auto-detects TTY)
- JSON structured formatter for production (SWITCHBOARD_LOG_FORMAT=json)
- Suppresses noisy third-party loggers (httpx, httpcore)
- Configurable via SWITCHBOARD_LOG_LEVEL, SWITCHBOARD_LOG_COLOR, SWITCHBOARD_LOG_FORMAT

Structured log extra fields (pass via logger.info(..., extra={...})):
    task_id, channel_id, job_id, session_id, platform, duration_ms, status
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

COLORS = {
    "DEBUG": "\033[36m",  # Cyan
    "INFO": "\033[32m",  # Green
    "WARNING": "\033[33m",  # Yellow
    "ERROR": "\033[31m",  # Red
    "CRITICAL": "\033[1;31m",  # Bold red
    "RESET": "\033[0m",
    "DIM": "\033[2m",
}


class ColorFormatter(logging.Formatter):
    """Colorized log formatter for terminal output."""

    def __init__(self, use_color: bool = True):
        super().__init__(
            fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_color:
            return super().format(record)

        level_color = COLORS.get(record.levelname, "")
        reset = COLORS["RESET"]

        orig_levelname = record.levelname
        orig_name = record.name
        record.levelname = f"{level_color}{record.levelname}{reset}"
        record.name = f"{COLORS['DIM']}{record.name}{reset}"
        try:
            return super().format(record)
        finally:
            record.levelname = orig_levelname
            record.name = orig_name


_STRUCTURED_FIELDS = (
    "task_id",
    "channel_id",
    "job_id",
    "session_id",
    "platform",
    "duration_ms",
    "status",
)


class StructuredFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation.

    One JSON object per line. Extra fields passed via
    logger.info("msg", extra={"task_id": "...", "duration_ms": 42})
    are lifted to the top level.

    Enable with: SWITCHBOARD_LOG_FORMAT=json
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for key in _STRUCTURED_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _should_use_color() -> bool:
    env_val = os.getenv("SWITCHBOARD_LOG_COLOR", "auto").lower()
    if env_val == "true":
        return True
    if env_val == "false":
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def setup_logging() -> None:
    """Configure logging for the entire process.

    Call once at startup.

    Env vars:
        SWITCHBOARD_LOG_LEVEL  — DEBUG / INFO / WARNING / ERROR (default: INFO)
        SWITCHBOARD_LOG_COLOR  — true / false / auto (default: auto)
        SWITCHBOARD_LOG_FORMAT — text / json (default: text)
    """
    level_name = os.getenv("SWITCHBOARD_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = os.getenv("SWITCHBOARD_LOG_FORMAT", "text").lower()

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if log_format == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = ColorFormatter(use_color=_should_use_color())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # Telegram delivery goes through httpx; keep request chatter out
    for noisy_logger in ["httpx", "httpcore", "httpcore.http11", "httpcore.connection"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    logging.getLogger("switchboard").debug(
        "Logging configured (level=%s, format=%s)", level_name, log_format
    )
