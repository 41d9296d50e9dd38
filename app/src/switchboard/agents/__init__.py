"""Switchboard Agents — external agent CLI invocation and stream parsing."""

from switchboard.agents.invoker import (
    AgentAbortedError,
    AgentError,
    AgentInvoker,
    AgentProcessError,
    AgentTimeoutError,
)
from switchboard.agents.stream import StreamParser

__all__ = [
    "AgentInvoker",
    "StreamParser",
    "AgentError",
    "AgentAbortedError",
    "AgentTimeoutError",
    "AgentProcessError",
]
