"""CLI entrypoint for storyloop."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from storyloop import __version__
from storyloop.config import Settings
from storyloop.orchestrator.controllers import (
    CommandResult,
    RunCommand,
    SetsCommand,
    StatusCommand,
    StoryloopCliController,
    ValidateSetCommand,
)
from storyloop.orchestrator.errors import ConfigurationError, StoryloopError
from storyloop.orchestrator.exit_codes import ExitCode
from storyloop.orchestrator.models import TargetDir

click.rich_click.USE_MARKDOWN = True
CONTROLLER = StoryloopCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="storyloop")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level. Defaults to STORYLOOP_LOG_LEVEL or WARNING.",
)
def storyloop(log_level: str | None) -> None:
    """Convert feature requests into subtasks and run them with a coding agent."""

    logging.basicConfig(
        level=_log_level(log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@storyloop.command("run")
@click.argument(
    "sources",
    nargs=-1,
    required=True,
    type=click.Path(path_type=Path, dir_okay=False),
)
@click.option("--set", "set_name", default=None, help="Template set name.")
@click.option(
    "--config-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Config directory. Defaults to STORYLOOP_CONFIG_DIR or ~/.storyloop.",
)
@click.option(
    "--working-dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Directory the agent runs in. Defaults to the current directory.",
)
@click.option(
    "--target-dir",
    "target_dirs",
    multiple=True,
    metavar="NAME=PATH",
    help="Repository the work item may touch. Can be repeated.",
)
@click.option(
    "--dry-run/--no-dry-run",
    default=False,
    show_default=True,
    help="Convert when needed and list subtasks without executing them.",
)
def run(  # noqa: PLR0913
    sources: tuple[Path, ...],
    set_name: str | None,
    config_dir: Path | None,
    working_dir: Path | None,
    target_dirs: tuple[str, ...],
    dry_run: bool,
) -> None:
    """Convert work item documents and execute their subtasks in order.

    Work items run one after another; the batch stops at the first one that
    does not complete.
    """

    parsed_dirs = tuple(_parse_target_dir(raw) for raw in target_dirs)
    _finish(
        _guarded(
            lambda: CONTROLLER.run(
                RunCommand(
                    sources=sources,
                    working_dir=working_dir,
                    config_dir=config_dir,
                    set_name=set_name,
                    target_dirs=parsed_dirs,
                    dry_run=dry_run,
                ),
            ),
        ),
    )


@storyloop.command("status")
@click.argument("source", type=click.Path(path_type=Path, dir_okay=False))
def status(source: Path) -> None:
    """Show persisted progress of one work item."""

    _finish(_guarded(lambda: CONTROLLER.status(StatusCommand(source=source))))


@storyloop.command("sets")
@click.option(
    "--config-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Config directory. Defaults to STORYLOOP_CONFIG_DIR or ~/.storyloop.",
)
def sets(config_dir: Path | None) -> None:
    """List available template sets."""

    _finish(
        _guarded(lambda: CommandResult(lines=CONTROLLER.sets(SetsCommand(config_dir=config_dir)))),
    )


@storyloop.command("validate-set")
@click.argument("name")
@click.option(
    "--config-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Config directory. Defaults to STORYLOOP_CONFIG_DIR or ~/.storyloop.",
)
def validate_set(name: str, config_dir: Path | None) -> None:
    """Validate a template set document and its prompt templates."""

    _finish(
        _guarded(
            lambda: CONTROLLER.validate_set(ValidateSetCommand(name=name, config_dir=config_dir)),
        ),
    )


def _log_level(option: str | None) -> int:
    if option:
        return logging.getLevelName(option.upper())
    try:
        settings = Settings.from_env()
        settings.validate()
    except ValueError:
        # Commands load settings again and report the invalid value.
        return logging.WARNING
    return settings.log_level_number


def _parse_target_dir(raw: str) -> TargetDir:
    name, separator, path = raw.partition("=")
    if not separator or not name.strip() or not path.strip():
        raise click.BadParameter(
            f"Expected NAME=PATH, got {raw!r}.",
            param_hint="--target-dir",
        )
    return TargetDir(name=name.strip(), path=path.strip())


def _guarded(action: Callable[[], CommandResult]) -> CommandResult:
    """Run a controller action, turning errors into an exit code."""

    try:
        return action()
    except ConfigurationError as error:
        lines = [f"Error: {error.report()}"]
        if error.violations and error.expected_structure is None:
            lines.extend(f"  - {message}" for message in error.violations)
        return CommandResult(lines=lines, exit_code=error.exit_code)
    except StoryloopError as error:
        lines = [f"Error: {error}"]
        lines.extend(f"  - {message}" for message in getattr(error, "violations", []))
        return CommandResult(lines=lines, exit_code=error.exit_code)
    except Exception as error:  # noqa: BLE001
        logger.exception("Unexpected failure")
        return CommandResult(lines=[f"Error: {error}"], exit_code=ExitCode.UNKNOWN)


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code != ExitCode.SUCCESS:
        raise SystemExit(int(result.exit_code))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    storyloop()
