"""
Switchboard Configuration — single source of truth for all settings.

Reads from environment variables with sensible defaults.
No config files, no YAML. A local .env is picked up if present.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


DEFAULT_ALLOWED_TOOLS = (
    "mcp__ai-assistant__*",
    "Bash(*)",
    "Read",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
    "Skill(*)",
)


@dataclass(frozen=True)
class QueueConfig:
    """Per-channel task queue limits and housekeeping windows (seconds)."""

    max_queue_depth: int = 10
    cleanup_interval: float = 600.0
    retention: float = 3600.0
    orphan_age: float = 1800.0
    recent_window: float = 300.0

    @classmethod
    def from_env(cls) -> QueueConfig:
        return cls(
            max_queue_depth=int(os.getenv("SWITCHBOARD_QUEUE_MAX_DEPTH", "10")),
            cleanup_interval=float(
                os.getenv("SWITCHBOARD_QUEUE_CLEANUP_INTERVAL", "600")
            ),
            retention=float(os.getenv("SWITCHBOARD_QUEUE_RETENTION", "3600")),
            orphan_age=float(os.getenv("SWITCHBOARD_QUEUE_ORPHAN_AGE", "1800")),
            recent_window=float(os.getenv("SWITCHBOARD_QUEUE_RECENT_WINDOW", "300")),
        )


@dataclass(frozen=True)
class AgentConfig:
    """External reasoning-agent process settings."""

    command: str = "claude"
    mcp_config_path: str = "mcp.json"
    inactivity_timeout: float = 300.0  # 5 minutes without output
    max_duration: float = 1800.0  # 30 minute hard ceiling
    kill_grace: float = 5.0  # SIGTERM → SIGKILL
    working_dir: str = ""
    allowed_tools: tuple[str, ...] = DEFAULT_ALLOWED_TOOLS

    @classmethod
    def from_env(cls) -> AgentConfig:
        tools_env = os.getenv("SWITCHBOARD_AGENT_ALLOWED_TOOLS", "")
        allowed = (
            tuple(t.strip() for t in tools_env.split(",") if t.strip())
            if tools_env
            else DEFAULT_ALLOWED_TOOLS
        )
        return cls(
            command=os.getenv("SWITCHBOARD_AGENT_COMMAND", "claude"),
            mcp_config_path=os.getenv("SWITCHBOARD_MCP_CONFIG", "mcp.json"),
            inactivity_timeout=float(
                os.getenv("SWITCHBOARD_AGENT_INACTIVITY_TIMEOUT", "300")
            ),
            max_duration=float(os.getenv("SWITCHBOARD_AGENT_MAX_DURATION", "1800")),
            kill_grace=float(os.getenv("SWITCHBOARD_AGENT_KILL_GRACE", "5")),
            working_dir=os.getenv("SWITCHBOARD_WORKING_DIR", ""),
            allowed_tools=allowed,
        )


@dataclass(frozen=True)
class SchedulerConfig:
    """Cron job scheduler settings."""

    default_timezone: str = "Europe/Berlin"
    typing_interval: float = 4.0
    progress_interval: float = 180.0  # 3 minutes

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        return cls(
            default_timezone=os.getenv("SWITCHBOARD_TIMEZONE", "Europe/Berlin"),
            typing_interval=float(
                os.getenv("SWITCHBOARD_SCHEDULER_TYPING_INTERVAL", "4")
            ),
            progress_interval=float(
                os.getenv("SWITCHBOARD_SCHEDULER_PROGRESS_INTERVAL", "180")
            ),
        )


@dataclass(frozen=True)
class TelegramConfig:
    """Telegram Bot API delivery settings."""

    bot_token: str = ""
    api_base: str = "https://api.telegram.org"
    timeout: float = 10.0

    @classmethod
    def from_env(cls) -> TelegramConfig:
        return cls(
            bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
            api_base=os.getenv("SWITCHBOARD_TELEGRAM_API", "https://api.telegram.org"),
            timeout=float(os.getenv("SWITCHBOARD_TELEGRAM_TIMEOUT", "10")),
        )


@dataclass(frozen=True)
class SwitchboardConfig:
    """Root configuration — one object to rule them all."""

    queue: QueueConfig = field(default_factory=QueueConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)

    @classmethod
    def from_env(cls) -> SwitchboardConfig:
        return cls(
            queue=QueueConfig.from_env(),
            agent=AgentConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
            telegram=TelegramConfig.from_env(),
        )


# Singleton: import this wherever you need config
config = SwitchboardConfig.from_env()


def reload_config() -> SwitchboardConfig:
    """Re-read the environment and replace the module singleton."""
    global config
    config = SwitchboardConfig.from_env()
    return config
