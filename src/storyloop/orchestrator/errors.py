"""Error taxonomy for work-item orchestration.

Every error carries the process exit code the CLI reports for it. Errors
raised while initializing a work item are fatal and never retried; errors
raised for one subtask stop the run loop after being recorded in the error
log and the progress document.
"""

from __future__ import annotations

from storyloop.orchestrator.exit_codes import ExitCode


class StoryloopError(Exception):
    """Base class for orchestration errors with an exit code."""

    exit_code: ExitCode = ExitCode.UNKNOWN

    def __init__(self, message: str, *, exit_code: ExitCode | None = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class TransportError(StoryloopError):
    """Agent process failed to launch or exited nonzero without usable output."""

    exit_code = ExitCode.AGENT_ERROR

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr: str = "",
        exit_code: ExitCode | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message, exit_code=exit_code)
        self.returncode = returncode
        self.stderr = stderr
        self.details = dict(details or {})


class ParseError(StoryloopError):
    """Agent output is present but holds no locatable JSON object."""

    exit_code = ExitCode.SCHEMA_INVALID


class SchemaError(StoryloopError):
    """Parsed document is missing required fields or violates its shape."""

    exit_code = ExitCode.SCHEMA_INVALID

    def __init__(self, message: str, *, violations: list[str] | None = None) -> None:
        super().__init__(message)
        self.violations = list(violations or [])


class SecurityPolicyViolation(StoryloopError):
    """Agent reported a failed security check for a subtask."""

    exit_code = ExitCode.TASK_FAILED

    def __init__(self, message: str, *, issues: list[object] | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])


class ContextCompactedError(StoryloopError):
    """Agent session exceeded its context window and was compacted."""

    exit_code = ExitCode.TASK_FAILED


class DependencyUnsatisfiable(StoryloopError):
    """No eligible subtask remains while some subtasks are not terminal."""

    exit_code = ExitCode.TASK_BLOCKED


class ConfigurationError(StoryloopError):
    """Template set or user configuration is missing or invalid."""

    exit_code = ExitCode.INIT_FAILED

    def __init__(
        self,
        message: str,
        *,
        violations: list[str] | None = None,
        expected_structure: str | None = None,
    ) -> None:
        super().__init__(message)
        self.violations = list(violations or [])
        self.expected_structure = expected_structure

    def report(self) -> str:
        """Error message followed by the expected document structure, when known."""

        message = str(self)
        if self.expected_structure and self.expected_structure not in message:
            message = f"{message}\nExpected structure:\n{self.expected_structure}"
        return message


class TemplateNotFoundError(ConfigurationError):
    """Prompt template or system prompt file does not exist."""


class WorkItemSourceNotFound(StoryloopError):
    """Work item source document cannot be read."""

    exit_code = ExitCode.FILE_NOT_FOUND


class ConsistencyError(StoryloopError):
    """Persisted state conflicts with the request or with itself."""

    exit_code = ExitCode.INVALID_ARGS


class StateTransitionError(ConsistencyError):
    """Progress status change that the transition table does not allow."""
