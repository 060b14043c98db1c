"""Agent backend implementations."""

from storyloop.orchestrator.backend.base import (
    AgentBackend,
    AgentInvocation,
    AgentInvocationResult,
)
from storyloop.orchestrator.backend.cli_backend import CliAgentBackend
from storyloop.orchestrator.backend.stream import EventStream, StreamSummary, consume_events

__all__ = [
    "AgentBackend",
    "AgentInvocation",
    "AgentInvocationResult",
    "CliAgentBackend",
    "EventStream",
    "StreamSummary",
    "consume_events",
]
