"""Controllers for storyloop CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from storyloop.config import Settings
from storyloop.orchestrator.backend import CliAgentBackend
from storyloop.orchestrator.engine import (
    BatchOutcome,
    ExecutionEngine,
    RunOutcome,
    RunRequest,
)
from storyloop.orchestrator.errors import ConfigurationError
from storyloop.orchestrator.exit_codes import ExitCode
from storyloop.orchestrator.models import TargetDir
from storyloop.orchestrator.prompts import format_commit
from storyloop.orchestrator.set_config import (
    CONVERTER_TEMPLATE,
    EXECUTOR_TEMPLATE,
    EXPECTED_SET_STRUCTURE,
    ensure_config_dir,
    list_sets,
    migrate_set_config,
    set_document_path,
    template_path,
    validate_set_config,
)
from storyloop.orchestrator.state_store import LoadOutcome, StateStore, project_name_for


@dataclass(slots=True)
class RunCommand:
    """CLI input for converting and executing work items."""

    sources: tuple[Path, ...]
    working_dir: Path | None
    config_dir: Path | None
    set_name: str | None
    target_dirs: tuple[TargetDir, ...] = ()
    dry_run: bool = False


@dataclass(slots=True)
class StatusCommand:
    """CLI input for persisted state inspection."""

    source: Path
    config_dir: Path | None = None


@dataclass(slots=True)
class SetsCommand:
    """CLI input for template set listing."""

    config_dir: Path | None


@dataclass(slots=True)
class ValidateSetCommand:
    """CLI input for template set validation."""

    name: str
    config_dir: Path | None


@dataclass(slots=True)
class CommandResult:
    """Lines to render and the process exit code."""

    lines: list[str] = field(default_factory=list)
    exit_code: ExitCode = ExitCode.SUCCESS


class StoryloopCliController:
    """Coordinates run, status and template-set CLI operations."""

    def run(self, command: RunCommand) -> CommandResult:
        settings = _settings(command.config_dir)
        ensure_config_dir(settings.config_dir)
        engine = ExecutionEngine(
            store=_store(settings),
            backend=CliAgentBackend(
                settings.agent.command,
                default_context_window=settings.agent.context_window,
            ),
            settings=settings,
        )
        working_dir = command.working_dir or Path.cwd()
        batch = engine.run_batch(
            [
                RunRequest(
                    source_path=source,
                    working_dir=working_dir,
                    set_name=command.set_name,
                    config_dir=settings.config_dir,
                    target_dirs=list(command.target_dirs),
                    dry_run=command.dry_run,
                )
                for source in command.sources
            ],
        )
        return CommandResult(lines=_render_batch(batch), exit_code=batch.exit_code)

    def status(self, command: StatusCommand) -> CommandResult:
        """Show the persisted state of one work item without changing it."""

        settings = _settings(command.config_dir)
        source = command.source.absolute()
        loaded = _store(settings).load(source)
        if loaded.outcome is LoadOutcome.ABSENT:
            return CommandResult(
                lines=[f"No state found for {source.name} in {loaded.state_dir}"],
                exit_code=ExitCode.FILE_NOT_FOUND,
            )
        if loaded.outcome is LoadOutcome.INVALID or loaded.work_item is None:
            return CommandResult(
                lines=[f"State in {loaded.state_dir} is unreadable: {loaded.reason}"],
                exit_code=ExitCode.SCHEMA_INVALID,
            )

        work_item = loaded.work_item
        progress = loaded.progress
        completed = set(progress.completed_tasks) if progress is not None else set()
        lines = [
            f"Project: {project_name_for(source)} ({work_item.display_id})",
            f"Title: {work_item.title}",
            f"Branch: {work_item.branch_name}",
        ]
        if progress is not None:
            lines.extend(
                [
                    f"Status: {progress.status.value}",
                    f"Progress: {len(progress.completed_tasks)}/{progress.total_tasks} completed",
                    f"Started: {progress.started_at}",
                ],
            )
            if progress.template_set:
                lines.append(f"Template set: {progress.template_set}")
            if progress.completed_at:
                lines.append(f"Completed: {progress.completed_at}")
            if progress.summary:
                lines.append(f"Summary: {progress.summary}")
        if work_item.target_dirs:
            lines.append("Target dirs:")
            lines.extend(f"  {entry.name}: {entry.path}" for entry in work_item.target_dirs)
        lines.append("Subtasks:")
        for subtask in work_item.subtasks:
            marker = "DONE" if subtask.id in completed else subtask.status.value.upper()
            lines.append(f"  [{marker}] {subtask.id}: {subtask.title}")
            lines.extend(f"      commit {format_commit(commit)}" for commit in subtask.commits)
        if progress is not None and progress.last_error is not None:
            last_error = progress.last_error
            lines.append(
                f"Last error: {last_error.task_id} at {last_error.timestamp}: {last_error.message}",
            )
        return CommandResult(lines=lines)

    def sets(self, command: SetsCommand) -> list[str]:
        settings = _settings(command.config_dir)
        ensure_config_dir(settings.config_dir)
        names = list_sets(settings.config_dir)
        if not names:
            return [f"No template sets in {settings.config_dir / 'sets'}"]
        return [
            f"Template sets in {settings.config_dir / 'sets'}:",
            *(f"  {name}" for name in names),
        ]

    def validate_set(self, command: ValidateSetCommand) -> CommandResult:
        """Validate a set document and its prompt templates."""

        settings = _settings(command.config_dir)
        path = set_document_path(settings.config_dir, command.name)
        try:
            raw = json.loads(path.read_text("utf-8"))
        except FileNotFoundError:
            return CommandResult(
                lines=[
                    f"Set config not found: {path}",
                    "Expected structure:",
                    EXPECTED_SET_STRUCTURE,
                ],
                exit_code=ExitCode.INIT_FAILED,
            )
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
            return CommandResult(
                lines=[
                    f"Set config is not readable JSON: {path}: {error}",
                    "Expected structure:",
                    EXPECTED_SET_STRUCTURE,
                ],
                exit_code=ExitCode.INIT_FAILED,
            )

        document, migrations = migrate_set_config(raw) if isinstance(raw, dict) else (raw, [])
        lines = [f"Set: {command.name} ({path})"]
        lines.extend(f"Migration applied: {name}" for name in migrations)
        validation = validate_set_config(document)
        violations = list(validation.messages)
        for template_name in (CONVERTER_TEMPLATE, EXECUTOR_TEMPLATE):
            template = template_path(settings.config_dir, command.name, template_name)
            if not template.is_file():
                violations.append(f"{template.name}: Template not found")
        if violations:
            lines.append("Errors:")
            lines.extend(f"  - {message}" for message in violations)
            lines.append("Expected structure:")
            lines.append(EXPECTED_SET_STRUCTURE)
            return CommandResult(lines=lines, exit_code=ExitCode.INIT_FAILED)
        lines.append("Set config is valid.")
        return CommandResult(lines=lines)


def _settings(config_dir: Path | None) -> Settings:
    try:
        settings = Settings.from_env(config_dir=config_dir)
        settings.validate()
    except ValueError as error:
        raise ConfigurationError(str(error)) from error
    return settings


def _store(settings: Settings) -> StateStore:
    return StateStore(
        output_preview_chars=settings.state.output_preview_chars,
        log_full_output=settings.state.log_full_output,
    )


def _render_batch(batch: BatchOutcome) -> list[str]:
    lines: list[str] = []
    for outcome in batch.outcomes:
        lines.extend(_render_outcome(outcome))
    for path in batch.skipped:
        lines.append(f"Skipped: {path.name}")
    succeeded = sum(1 for outcome in batch.outcomes if outcome.succeeded)
    lines.append(f"Usage: {batch.usage.describe()}")
    lines.append(
        "Run summary: "
        f"processed={len(batch.outcomes)} succeeded={succeeded} "
        f"failed={len(batch.outcomes) - succeeded} skipped={len(batch.skipped)} "
        f"exit_code={int(batch.exit_code)}",
    )
    return lines


def _render_outcome(outcome: RunOutcome) -> list[str]:
    label = (
        outcome.work_item.display_id
        if outcome.work_item is not None
        else outcome.source_path.name
    )
    status = outcome.status.value if outcome.status is not None else "not started"
    lines = [
        f"Work item {label}: status={status} exit_code={int(outcome.exit_code)}",
    ]
    if outcome.plan:
        lines.append("Plan:")
        lines.extend(
            f"  {entry.position}. [{'DONE' if entry.done else 'TODO'}] "
            f"{entry.subtask.id}: {entry.subtask.title}"
            for entry in outcome.plan
        )
    if outcome.stopped_at:
        lines.append(f"  Stopped at: {outcome.stopped_at}")
    if outcome.message:
        lines.append(f"  {outcome.message}")
    if not outcome.succeeded and outcome.work_item is not None and outcome.progress is not None:
        commits = outcome.work_item.all_commits(set(outcome.progress.completed_tasks))
        if commits:
            lines.append("  Commits of completed subtasks (revert with git revert):")
            lines.extend(f"    {format_commit(commit)}" for commit in commits)
        lines.append(f"  To continue: storyloop run {outcome.source_path.name}")
    if outcome.state_dir is not None:
        lines.append(f"  State: {outcome.state_dir}")
    return lines
