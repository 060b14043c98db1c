"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from collections.abc import Iterator, Sequence
from typing import IO

from storyloop.orchestrator.backend.base import AgentInvocation, AgentInvocationResult
from storyloop.orchestrator.backend.stream import EventStream, consume_events
from storyloop.orchestrator.backend.tools import get_tool
from storyloop.orchestrator.errors import TransportError
from storyloop.orchestrator.usage import DEFAULT_CONTEXT_WINDOW

logger = logging.getLogger(__name__)

TASK_LIST_ENV_VAR = "CLAUDE_CODE_TASK_LIST_ID"
_READ_SIZE = 64 * 1024


class CliAgentBackend:
    """Run the agent executable and consume its stdout as an event stream.

    The wait for process exit is blocking and has no timeout.
    """

    def __init__(
        self,
        command: Sequence[str] = ("claude",),
        *,
        default_context_window: int = DEFAULT_CONTEXT_WINDOW,
    ) -> None:
        if not command:
            raise ValueError("Agent command must not be empty.")
        self._command = tuple(command)
        self._default_context_window = default_context_window

    def build_argv(self, request: AgentInvocation) -> list[str]:
        tool = get_tool(request.tool_config.tool)
        tool_args = tool.build_args(
            request.tool_config,
            streaming=True,
            system_prompt_file=request.system_prompt_file,
        )
        return [*self._command, *tool_args, request.prompt]

    def invoke(self, request: AgentInvocation) -> AgentInvocationResult:
        argv = self.build_argv(request)
        env = os.environ.copy()
        if request.task_list_id:
            env[TASK_LIST_ENV_VAR] = request.task_list_id

        logger.info(
            "Starting agent %s (%s phase) in %s",
            self._command[0],
            request.mode.value,
            request.working_dir,
        )
        with tempfile.TemporaryFile() as stderr_handle:
            try:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=request.working_dir,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=stderr_handle,
                )
            except OSError as error:
                logger.error("Agent command failed to start: %s", error)
                return AgentInvocationResult(
                    raw_output="",
                    transport_error=TransportError(
                        f"Agent command failed to start: {self._command[0]}: {error}",
                    ),
                )

            stdout = process.stdout
            if stdout is None:
                raise TransportError("Agent stdout pipe is not available")
            stream = EventStream(_read_chunks(stdout))
            try:
                summary = consume_events(
                    stream,
                    default_context_window=self._default_context_window,
                )
            finally:
                stdout.close()
            returncode = process.wait()
            stderr_handle.seek(0)
            stderr = stderr_handle.read().decode("utf-8", errors="replace")

        raw_output = stream.text
        transport_error: TransportError | None = None
        if returncode != 0:
            transport_error = TransportError(
                f"Agent exited with code {returncode}: {stderr.strip()}",
                returncode=returncode,
                stderr=stderr,
            )
            logger.warning(
                "Agent exited with code %s (structured result captured: %s)",
                returncode,
                summary.structured_result is not None,
            )
        logger.debug(
            "Agent stream finished: events=%s output_chars=%s",
            summary.event_count,
            len(raw_output),
        )
        return AgentInvocationResult(
            raw_output=raw_output,
            transport_error=transport_error,
            usage=summary.usage,
            context_signal=summary.context_signal,
            structured_result=summary.structured_result,
            exit_code=returncode,
            stderr=stderr,
        )


def _read_chunks(pipe: IO[bytes]) -> Iterator[bytes]:
    while True:
        chunk = pipe.read1(_READ_SIZE)  # type: ignore[attr-defined]
        if not chunk:
            return
        yield chunk
