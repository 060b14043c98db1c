"""Process exit codes reported by the CLI and the execution engine."""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Enumerated process exit codes."""

    SUCCESS = 0
    INIT_FAILED = 1
    SCHEMA_INVALID = 2
    TASK_FAILED = 3
    TASK_BLOCKED = 4
    NETWORK_ERROR = 5
    AGENT_ERROR = 6
    FILE_NOT_FOUND = 7
    INVALID_ARGS = 8
    UNKNOWN = 99
