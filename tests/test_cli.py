from __future__ import annotations

import json
import logging
from pathlib import Path

import allure
from click.testing import CliRunner

from storyloop.main import _log_level, storyloop
from storyloop.orchestrator.set_config import EXPECTED_SET_STRUCTURE
from storyloop.orchestrator.state_store import PROGRESS_FILE, WORK_ITEM_FILE, state_dir_for

pytestmark = [
    allure.epic("CLI"),
    allure.feature("storyloop commands"),
]


def test_run_converts_and_completes_with_echo_agent(echo_agent: Path, source_doc: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(
        storyloop,
        ["run", str(source_doc), "--working-dir", str(source_doc.parent)],
    )

    assert result.exit_code == 0, result.output
    assert "Work item PRD-CORE-7: status=completed exit_code=0" in result.output
    assert "All 2 tasks completed. 2 commits across 0 repos." in result.output
    assert "invocations=3" in result.output
    assert "Run summary: processed=1 succeeded=1 failed=0 skipped=0 exit_code=0" in result.output

    state_dir = state_dir_for(source_doc)
    work_item = json.loads((state_dir / WORK_ITEM_FILE).read_text("utf-8"))
    assert work_item["title"] == "Login throttling"
    assert json.loads((state_dir / PROGRESS_FILE).read_text("utf-8"))["completedTasks"] == [
        "US-001",
        "US-002",
    ]

    status = runner.invoke(storyloop, ["status", str(source_doc)])
    assert status.exit_code == 0, status.output
    assert "Status: completed" in status.output
    assert "Progress: 2/2 completed" in status.output
    assert "[DONE] US-002: Second step" in status.output
    assert "commit app(./app):abcdef1" in status.output


def test_blocked_subtask_exits_with_blocked_code(
    echo_agent: Path,
    source_doc: Path,
    monkeypatch,
) -> None:
    monkeypatch.setenv("STORYLOOP_ECHO_TASK_OUTCOME", "blocked")
    monkeypatch.setenv("STORYLOOP_ECHO_OUTPUT", "text")

    result = CliRunner().invoke(
        storyloop,
        ["run", str(source_doc), "--working-dir", str(source_doc.parent)],
    )

    assert result.exit_code == 4, result.output
    assert "Stopped at: US-001" in result.output
    assert "To continue: storyloop run PRD-CORE-7.feature.md" in result.output


def test_dry_run_prints_plan(echo_agent: Path, source_doc: Path) -> None:
    result = CliRunner().invoke(
        storyloop,
        ["run", str(source_doc), "--working-dir", str(source_doc.parent), "--dry-run"],
    )

    assert result.exit_code == 0, result.output
    assert "1. [TODO] US-001: First step" in result.output
    assert "2. [TODO] US-002: Second step" in result.output
    assert "status=initialized" in result.output


def test_missing_source_exits_with_file_not_found(echo_agent: Path, tmp_path: Path) -> None:
    result = CliRunner().invoke(storyloop, ["run", str(tmp_path / "missing.md")])

    assert result.exit_code == 7, result.output
    assert "Could not read work item source" in result.output


def test_bad_target_dir_is_usage_error(echo_agent: Path, source_doc: Path) -> None:
    result = CliRunner().invoke(storyloop, ["run", str(source_doc), "--target-dir", "api"])

    assert result.exit_code == 2
    assert "NAME=PATH" in result.output


def test_status_without_state(echo_agent: Path, source_doc: Path) -> None:
    result = CliRunner().invoke(storyloop, ["status", str(source_doc)])

    assert result.exit_code == 7
    assert "No state found for PRD-CORE-7.feature.md" in result.output


def test_sets_and_validate_set(echo_agent: Path) -> None:
    runner = CliRunner()

    listed = runner.invoke(storyloop, ["sets"])
    assert listed.exit_code == 0, listed.output
    assert "  default" in listed.output

    valid = runner.invoke(storyloop, ["validate-set", "default"])
    assert valid.exit_code == 0, valid.output
    assert "Set config is valid." in valid.output


def test_validate_set_reports_violations(echo_agent: Path) -> None:
    set_path = echo_agent / "sets" / "default" / "set.json"
    document = json.loads(set_path.read_text("utf-8"))
    del document["task"]
    document["conversion"] = document["conversion"][0]
    set_path.write_text(json.dumps(document), "utf-8")

    result = CliRunner().invoke(storyloop, ["validate-set", "default"])

    assert result.exit_code == 1
    assert "Migration applied: wrap_single_phase_objects" in result.output
    assert 'set.json: Missing required key "task"' in result.output
    assert EXPECTED_SET_STRUCTURE in result.output


def test_invalid_settings_exit_with_init_failed(echo_agent: Path, monkeypatch) -> None:
    monkeypatch.setenv("STORYLOOP_CONTEXT_WINDOW", "0")

    result = CliRunner().invoke(storyloop, ["sets"])

    assert result.exit_code == 1
    assert "STORYLOOP_CONTEXT_WINDOW must be > 0." in result.output


def test_unknown_set_prints_expected_structure(echo_agent: Path, source_doc: Path) -> None:
    result = CliRunner().invoke(storyloop, ["run", str(source_doc), "--set", "nope"])

    assert result.exit_code == 1, result.output
    assert "Set config not found" in result.output
    assert EXPECTED_SET_STRUCTURE in result.output

    missing = CliRunner().invoke(storyloop, ["validate-set", "nope"])

    assert missing.exit_code == 1
    assert EXPECTED_SET_STRUCTURE in missing.output


def test_status_reports_undecodable_state(echo_agent: Path, source_doc: Path) -> None:
    state_dir = state_dir_for(source_doc)
    state_dir.mkdir()
    (state_dir / WORK_ITEM_FILE).write_bytes(b"\xff\xfe{")
    (state_dir / PROGRESS_FILE).write_text("{}", "utf-8")

    result = CliRunner().invoke(storyloop, ["status", str(source_doc)])

    assert result.exit_code == 2, result.output
    assert "is unreadable" in result.output


def test_log_level_comes_from_settings(echo_agent: Path, monkeypatch) -> None:
    monkeypatch.setenv("STORYLOOP_LOG_LEVEL", "debug")
    assert _log_level(None) == logging.DEBUG
    assert _log_level("error") == logging.ERROR

    monkeypatch.setenv("STORYLOOP_LOG_LEVEL", "loud")
    assert _log_level(None) == logging.WARNING

    result = CliRunner().invoke(storyloop, ["sets"])

    assert result.exit_code == 1
    assert "STORYLOOP_LOG_LEVEL must be one of" in result.output
