"""Backend interface for agent invocations."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from storyloop.orchestrator.errors import TransportError
from storyloop.orchestrator.models import Phase, ToolConfig
from storyloop.orchestrator.usage import AgentUsage


@dataclass(slots=True)
class AgentInvocation:
    """Inputs required to run one agent phase."""

    prompt: str
    working_dir: Path
    tool_config: ToolConfig
    mode: Phase
    system_prompt_file: Path | None = None
    task_list_id: str | None = None


@dataclass(slots=True)
class AgentInvocationResult:
    """Outcome of one agent process run.

    `transport_error` and `structured_result` may both be set when the agent
    exited nonzero after emitting its final `result` event.
    """

    raw_output: str
    transport_error: TransportError | None = None
    usage: AgentUsage | None = None
    context_signal: Any = None
    structured_result: dict[str, Any] | None = None
    exit_code: int | None = None
    stderr: str = ""


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def invoke(self, request: AgentInvocation) -> AgentInvocationResult:
        """Run the agent and return its captured output and signals."""
