from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest

from storyloop.config import AgentSettings, Settings, StateSettings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_from_env_defaults(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))

    settings = Settings.from_env()

    assert settings.config_dir == Path.home() / ".storyloop"
    assert settings.default_set == "default"
    assert settings.agent.command == ("claude",)
    assert settings.agent.context_window == 200_000
    assert settings.state.output_preview_chars == 500
    assert settings.state.log_full_output is True
    assert settings.log_level_number == logging.WARNING


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STORYLOOP_CONFIG_DIR", str(tmp_path / "cfg"))
    monkeypatch.setenv("STORYLOOP_DEFAULT_SET", "team")
    monkeypatch.setenv("STORYLOOP_AGENT_COMMAND", "claude --model 'opus fast'")
    monkeypatch.setenv("STORYLOOP_CONTEXT_WINDOW", "1000")
    monkeypatch.setenv("STORYLOOP_LOG_LEVEL", "debug")
    monkeypatch.setenv("STORYLOOP_LOG_FULL_OUTPUT", "off")

    settings = Settings.from_env()

    assert settings.config_dir == tmp_path / "cfg"
    assert settings.default_set == "team"
    assert settings.agent.command == ("claude", "--model", "opus fast")
    assert settings.agent.context_window == 1000
    assert settings.log_level == "DEBUG"
    assert settings.state.log_full_output is False


def test_explicit_config_dir_wins(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STORYLOOP_CONFIG_DIR", str(tmp_path / "env"))

    assert Settings.from_env(config_dir=tmp_path / "cli").config_dir == tmp_path / "cli"


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("STORYLOOP_LOG_FULL_OUTPUT", "maybe")

    with pytest.raises(ValueError, match="STORYLOOP_LOG_FULL_OUTPUT"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(agent=AgentSettings(command=())), "STORYLOOP_AGENT_COMMAND"),
        (Settings(agent=AgentSettings(context_window=0)), "STORYLOOP_CONTEXT_WINDOW"),
        (Settings(state=StateSettings(output_preview_chars=0)), "STORYLOOP_OUTPUT_PREVIEW_CHARS"),
        (Settings(log_level="LOUD"), "STORYLOOP_LOG_LEVEL"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
