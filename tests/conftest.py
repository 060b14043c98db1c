"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

from storyloop.orchestrator.set_config import ensure_config_dir

ECHO_AGENT_COMMAND = (sys.executable, "-m", "storyloop.orchestrator.backend.echo_agent")

_AGENT_ENV_VARS = (
    "STORYLOOP_CONFIG_DIR",
    "STORYLOOP_DEFAULT_SET",
    "STORYLOOP_LOG_LEVEL",
    "STORYLOOP_AGENT_COMMAND",
    "STORYLOOP_CONTEXT_WINDOW",
    "STORYLOOP_OUTPUT_PREVIEW_CHARS",
    "STORYLOOP_LOG_FULL_OUTPUT",
    "STORYLOOP_ECHO_OUTPUT",
    "STORYLOOP_ECHO_TASK_OUTCOME",
    "STORYLOOP_ECHO_EXIT_CODE",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer environment variables out of tests."""
    for name in _AGENT_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def config_dir(tmp_path: Path) -> Path:
    """Config directory scaffolded with the default template set."""
    path = tmp_path / "config"
    ensure_config_dir(path)
    return path


@pytest.fixture()
def echo_agent(monkeypatch, config_dir: Path) -> Path:
    """Point the CLI at the local echo agent and an isolated config directory."""
    monkeypatch.setenv("STORYLOOP_AGENT_COMMAND", shlex.join(ECHO_AGENT_COMMAND))
    monkeypatch.setenv("STORYLOOP_CONFIG_DIR", str(config_dir))
    return config_dir


@pytest.fixture()
def source_doc(tmp_path: Path) -> Path:
    """Feature request document in its own project directory."""
    project = tmp_path / "project"
    project.mkdir()
    path = project / "PRD-CORE-7.feature.md"
    path.write_text("# Login throttling\n\nLimit failed logins per account.\n", "utf-8")
    return path
