"""Template-set configuration: layout, legacy migrations and validation.

A config directory holds an optional `config.json` (user preferences such as
`defaultSet`) and a `sets/` directory with one sub-directory per template
set. Each set carries a `set.json` document, `converter.prompt.md` and
`executor.prompt.md` templates, and optionally a system prompt file.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from storyloop.orchestrator.backend.tools import (
    TOOLS,
    validate_output_schema,
    validate_tool_config,
)
from storyloop.orchestrator.contracts import write_json
from storyloop.orchestrator.errors import ConfigurationError, TemplateNotFoundError
from storyloop.orchestrator.models import Phase, ToolConfig
from storyloop.orchestrator.prompts import (
    DEFAULT_CONVERTER_PROMPT,
    DEFAULT_EXECUTOR_PROMPT,
    DEFAULT_SYSTEM_PROMPT,
)

logger = logging.getLogger(__name__)

DEFAULT_SET_NAME = "default"
SET_DOCUMENT_NAME = "set.json"
USER_CONFIG_NAME = "config.json"
CONVERTER_TEMPLATE = "converter"
EXECUTOR_TEMPLATE = "executor"
REQUIRED_SET_KEYS = ("name", "version", "conversion", "task")

_DEFAULT_CLAUDE_OPTIONS: dict[str, Any] = {
    "dangerouslySkipPermissions": True,
    "verbose": True,
    "outputFormat": "stream-json",
}

DEFAULT_SET_CONTENT: dict[str, Any] = {
    "name": "prd-generator",
    "description": "Templates for turning feature requests into executable user stories",
    "version": "1.0.0",
    "systemPrompt": "system.prompt.md",
    "conversion": [
        {
            "tool": "claude",
            "options": dict(_DEFAULT_CLAUDE_OPTIONS),
            "outputSchema": {
                "type": "object",
                "required": ["id", "title", "userStories", "targetDirs", "branchName"],
                "properties": {
                    "id": {"type": "string"},
                    "title": {"type": "string"},
                    "branchName": {"type": "string"},
                    "targetDirs": {"type": "array"},
                    "userStories": {"type": "array", "minItems": 1},
                },
            },
        },
    ],
    "task": [
        {
            "tool": "claude",
            "options": dict(_DEFAULT_CLAUDE_OPTIONS),
            "skipContext": False,
            "outputSchema": {
                "type": "object",
                "required": ["id", "status", "passes", "securityCheck"],
                "properties": {
                    "id": {"type": "string"},
                    "status": {
                        "type": "string",
                        "enum": ["completed", "failed", "blocked", "pending"],
                    },
                    "passes": {"type": "boolean"},
                    "securityCheck": {"type": "object"},
                    "commits": {"type": "array"},
                    "changedFiles": {"type": "array"},
                },
            },
        },
    ],
}

EXPECTED_SET_STRUCTURE = json.dumps(DEFAULT_SET_CONTENT, indent=4)


SetMigration = Callable[[dict[str, Any]], dict[str, Any] | None]


def wrap_flat_skip_task_context(document: dict[str, Any]) -> dict[str, Any] | None:
    """Rewrite the flat `options.skipTaskContext` layout into phase lists."""

    options = document.get("options")
    if not isinstance(options, dict) or "skipTaskContext" not in options:
        return None
    if "task" in document:
        return None
    migrated = copy.deepcopy(document)
    migrated["conversion"] = [{"tool": "claude", "options": dict(_DEFAULT_CLAUDE_OPTIONS)}]
    migrated["task"] = [
        {
            "tool": "claude",
            "options": dict(_DEFAULT_CLAUDE_OPTIONS),
            "skipContext": options["skipTaskContext"],
        },
    ]
    return migrated


def wrap_single_phase_objects(document: dict[str, Any]) -> dict[str, Any] | None:
    """Wrap a single tool config object given in place of a phase list."""

    phases = [
        phase
        for phase in (Phase.CONVERSION.value, Phase.TASK.value)
        if isinstance(document.get(phase), dict)
    ]
    if not phases:
        return None
    migrated = copy.deepcopy(document)
    for phase in phases:
        migrated[phase] = [migrated[phase]]
    return migrated


SET_MIGRATIONS: tuple[tuple[str, SetMigration], ...] = (
    ("wrap_flat_skip_task_context", wrap_flat_skip_task_context),
    ("wrap_single_phase_objects", wrap_single_phase_objects),
)


def migrate_set_config(document: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Apply legacy migrations in order; return the document and applied names."""

    current = document
    applied: list[str] = []
    for name, migration in SET_MIGRATIONS:
        migrated = migration(current)
        if migrated is None:
            continue
        current = migrated
        applied.append(name)
    return current, applied


@dataclass(slots=True)
class SetValidation:
    """Result of validating a set document."""

    valid: bool
    messages: list[str] = field(default_factory=list)


def validate_set_config(document: object) -> SetValidation:
    """Validate a migrated set document, short-circuiting on structural errors."""

    if not isinstance(document, dict):
        return SetValidation(valid=False, messages=["set.json: Must be an object"])

    messages = [
        f'set.json: Missing required key "{key}"'
        for key in REQUIRED_SET_KEYS
        if key not in document
    ]
    if messages:
        return SetValidation(valid=False, messages=messages)

    for phase in (Phase.CONVERSION.value, Phase.TASK.value):
        messages.extend(_validate_phase_list(document[phase], phase))
    if messages:
        return SetValidation(valid=False, messages=messages)

    for phase in (Phase.CONVERSION.value, Phase.TASK.value):
        for index, entry in enumerate(document[phase]):
            prefix = f"{phase}[{index}]."
            entry_messages = validate_tool_config(entry)
            tool = TOOLS.get(entry["tool"]) if isinstance(entry["tool"], str) else None
            if phase == Phase.TASK.value and tool is not None:
                entry_messages.extend(tool.validate_skip_context(entry))
            entry_messages.extend(validate_output_schema(entry.get("outputSchema")))
            messages.extend(f"{prefix}{message}" for message in entry_messages)

    system_prompt = document.get("systemPrompt")
    if system_prompt is not None and (not isinstance(system_prompt, str) or not system_prompt):
        messages.append("set.json.systemPrompt: Must be a non-empty string")

    return SetValidation(valid=not messages, messages=messages)


def _validate_phase_list(entries: object, phase: str) -> list[str]:
    if not isinstance(entries, list):
        return [f"set.json.{phase}: Must be an array"]
    if not entries:
        return [f"set.json.{phase}: Array must contain at least one tool config"]
    messages: list[str] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            messages.append(f"set.json.{phase}[{index}]: Must be an object")
            continue
        if "tool" not in entry:
            messages.append(f'set.json.{phase}[{index}]: Missing required key "tool"')
    return messages


@dataclass(slots=True)
class SetConfig:
    """Validated template set."""

    name: str
    path: Path
    document: dict[str, Any]
    migrations: list[str] = field(default_factory=list)

    @property
    def system_prompt(self) -> str | None:
        return self.document.get("systemPrompt") or None

    def tool_config(self, phase: Phase, tool_name: str | None = None) -> ToolConfig | None:
        """Return the first entry of `phase`, or the first one naming `tool_name`."""

        for entry in self.document.get(phase.value) or []:
            if tool_name is None or entry.get("tool") == tool_name:
                return ToolConfig.from_dict(entry)
        return None


def set_document_path(config_dir: Path, set_name: str) -> Path:
    return config_dir / "sets" / set_name / SET_DOCUMENT_NAME


def load_set_config(config_dir: Path, set_name: str) -> SetConfig:
    """Load, migrate and validate a template set."""

    path = set_document_path(config_dir, set_name)
    try:
        raw = json.loads(path.read_text("utf-8"))
    except FileNotFoundError as error:
        raise ConfigurationError(
            f"Set config not found: {path}",
            violations=[f"{path}: File not found"],
            expected_structure=EXPECTED_SET_STRUCTURE,
        ) from error
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
        raise ConfigurationError(
            f"Set config is not readable JSON: {path}: {error}",
            violations=[f"{path}: {error}"],
            expected_structure=EXPECTED_SET_STRUCTURE,
        ) from error

    document, migrations = (raw, []) if not isinstance(raw, dict) else migrate_set_config(raw)
    for name in migrations:
        logger.warning(
            "Set config %s uses a legacy structure (%s applied). Consider updating %s.",
            set_name,
            name,
            path,
        )

    validation = validate_set_config(document)
    if not validation.valid:
        errors = "\n  - ".join(validation.messages)
        raise ConfigurationError(
            f"Set config validation failed: {path}\n"
            f"Errors:\n  - {errors}\n"
            f"Expected structure:\n{EXPECTED_SET_STRUCTURE}",
            violations=validation.messages,
            expected_structure=EXPECTED_SET_STRUCTURE,
        )
    return SetConfig(name=set_name, path=path, document=document, migrations=migrations)


def list_sets(config_dir: Path) -> list[str]:
    sets_dir = config_dir / "sets"
    if not sets_dir.is_dir():
        raise ConfigurationError(f"Sets directory not found: {sets_dir}")
    return sorted(entry.name for entry in sets_dir.iterdir() if entry.is_dir())


def ensure_config_dir(config_dir: Path) -> bool:
    """Create the config directory with the default set when it does not exist.

    Returns True when files were written.
    """

    if config_dir.exists():
        if not config_dir.is_dir():
            raise ConfigurationError(f"Config path is not a directory: {config_dir}")
        return False

    set_dir = config_dir / "sets" / DEFAULT_SET_NAME
    set_dir.mkdir(parents=True)
    write_json(config_dir / USER_CONFIG_NAME, {"defaultSet": DEFAULT_SET_NAME})
    write_json(set_dir / SET_DOCUMENT_NAME, DEFAULT_SET_CONTENT)
    (set_dir / f"{CONVERTER_TEMPLATE}.prompt.md").write_text(DEFAULT_CONVERTER_PROMPT, "utf-8")
    (set_dir / f"{EXECUTOR_TEMPLATE}.prompt.md").write_text(DEFAULT_EXECUTOR_PROMPT, "utf-8")
    (set_dir / str(DEFAULT_SET_CONTENT["systemPrompt"])).write_text(DEFAULT_SYSTEM_PROMPT, "utf-8")
    logger.warning("Created config directory %s with the default template set", config_dir)
    return True


def load_user_config(config_dir: Path) -> dict[str, Any]:
    """Read `config.json`; a missing file means no preferences."""

    path = config_dir / USER_CONFIG_NAME
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
        raise ConfigurationError(f"Config not readable: {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Config must be a JSON object: {path}")
    return payload


def resolve_set_name(config_dir: Path, requested: str | None, fallback: str) -> str:
    """Pick the explicitly requested set, else `defaultSet` from config, else `fallback`."""

    if requested:
        return requested
    default_set = load_user_config(config_dir).get("defaultSet")
    if isinstance(default_set, str) and default_set:
        return default_set
    return fallback


def template_path(config_dir: Path, set_name: str, template_name: str) -> Path:
    return config_dir / "sets" / set_name / f"{template_name}.prompt.md"


def load_template(config_dir: Path, set_name: str, template_name: str) -> str:
    path = template_path(config_dir, set_name, template_name)
    try:
        return path.read_text("utf-8")
    except FileNotFoundError as error:
        raise TemplateNotFoundError(f"Template not found: {path}") from error
    except (OSError, UnicodeDecodeError) as error:
        raise ConfigurationError(f"Template not readable: {path}: {error}") from error


def system_prompt_path(config_dir: Path, set_config: SetConfig) -> Path | None:
    """Resolve the set's system prompt file; raise when configured but missing."""

    file_name = set_config.system_prompt
    if file_name is None:
        return None
    path = config_dir / "sets" / set_config.name / file_name
    if not path.is_file():
        raise TemplateNotFoundError(f"System prompt not found: {path}")
    return path
