"""Runtime configuration for work-item orchestration."""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class AgentSettings:
    """External agent process settings."""

    command: tuple[str, ...] = ("claude",)
    context_window: int = 200_000


@dataclass(slots=True)
class StateSettings:
    """State directory and log settings."""

    output_preview_chars: int = 500
    log_full_output: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    config_dir: Path = field(default_factory=lambda: Path.home() / ".storyloop")
    default_set: str = "default"
    log_level: str = "WARNING"
    agent: AgentSettings = field(default_factory=AgentSettings)
    state: StateSettings = field(default_factory=StateSettings)

    @classmethod
    def from_env(cls, config_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        raw_config_dir = os.getenv("STORYLOOP_CONFIG_DIR")
        return cls(
            config_dir=config_dir
            or (
                Path(raw_config_dir).expanduser()
                if raw_config_dir
                else Path.home() / ".storyloop"
            ),
            default_set=os.getenv("STORYLOOP_DEFAULT_SET", "default").strip() or "default",
            log_level=os.getenv("STORYLOOP_LOG_LEVEL", "WARNING").strip().upper(),
            agent=AgentSettings(
                command=tuple(shlex.split(os.getenv("STORYLOOP_AGENT_COMMAND", "claude"))),
                context_window=int(os.getenv("STORYLOOP_CONTEXT_WINDOW", "200000")),
            ),
            state=StateSettings(
                output_preview_chars=int(os.getenv("STORYLOOP_OUTPUT_PREVIEW_CHARS", "500")),
                log_full_output=_env_bool("STORYLOOP_LOG_FULL_OUTPUT", True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for unusable values."""

        if not self.agent.command:
            raise ValueError("STORYLOOP_AGENT_COMMAND must not be empty.")
        if self.agent.context_window <= 0:
            raise ValueError("STORYLOOP_CONTEXT_WINDOW must be > 0.")
        if self.state.output_preview_chars <= 0:
            raise ValueError("STORYLOOP_OUTPUT_PREVIEW_CHARS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"STORYLOOP_LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(self.log_level)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
