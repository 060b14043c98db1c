"""Agent tool capabilities: option validation and command-line construction."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from storyloop.orchestrator.errors import ConfigurationError
from storyloop.orchestrator.models import ToolConfig

_JSON_TYPE_NAMES: dict[type, str] = {
    bool: "boolean",
    str: "string",
    int: "number",
    float: "number",
    dict: "object",
    list: "array",
}


@dataclass(frozen=True, slots=True)
class OptionSpec:
    """Declared type, default and allowed values of one tool option."""

    type_name: str
    default: Any
    allowed: tuple[str, ...] | None = None


class AgentTool(Protocol):
    """Capability implemented by each supported agent tool."""

    name: str

    def validate(self, config: dict[str, Any]) -> list[str]:
        """Return violation messages for a raw tool config entry."""

    def validate_skip_context(self, config: dict[str, Any]) -> list[str]:
        """Return violation messages for the `skipContext` flag."""

    def build_args(
        self,
        config: ToolConfig,
        *,
        streaming: bool = True,
        system_prompt_file: Path | None = None,
    ) -> list[str]:
        """Build the argument list preceding the prompt."""


class ClaudeTool:
    """`claude` CLI in print mode."""

    name = "claude"
    options_schema: dict[str, OptionSpec] = {
        "dangerouslySkipPermissions": OptionSpec("boolean", default=True),
        "verbose": OptionSpec("boolean", default=True),
        "outputFormat": OptionSpec(
            "string",
            default="stream-json",
            allowed=("stream-json", "json", "text"),
        ),
    }

    def validate(self, config: dict[str, Any]) -> list[str]:
        tool = config.get("tool")
        if tool != self.name:
            return [f'ClaudeTool.validate: Expected tool "{self.name}", got "{tool}"']
        if "options" not in config:
            return []
        options = config["options"]
        if not isinstance(options, dict):
            return ["config.options: Must be an object"]

        messages: list[str] = []
        for key, value in options.items():
            spec = self.options_schema.get(key)
            if spec is None:
                messages.append(f"config.options.{key}: Unknown option")
                continue
            actual = json_type_name(value)
            if actual != spec.type_name:
                messages.append(
                    f'config.options.{key}: Must be type "{spec.type_name}", got "{actual}"',
                )
                continue
            if spec.allowed is not None and value not in spec.allowed:
                messages.append(
                    f'config.options.{key}: Invalid value "{value}". '
                    f"Allowed: {', '.join(spec.allowed)}",
                )
        return messages

    def validate_skip_context(self, config: dict[str, Any]) -> list[str]:
        if "skipContext" not in config:
            return []
        value = config["skipContext"]
        if isinstance(value, bool):
            return []
        return [f'config.skipContext: Must be type "boolean", got "{json_type_name(value)}"']

    def build_args(
        self,
        config: ToolConfig,
        *,
        streaming: bool = True,
        system_prompt_file: Path | None = None,
    ) -> list[str]:
        options = config.options
        args = ["--print"]
        if options.get("dangerouslySkipPermissions") is not False:
            args.append("--dangerously-skip-permissions")
        if options.get("verbose") or streaming:
            args.append("--verbose")
        output_format = options.get("outputFormat")
        if output_format or streaming:
            args.extend(["--output-format", output_format or "stream-json"])
        if config.output_schema:
            args.extend(["--json-schema", json.dumps(config.output_schema)])
        if system_prompt_file is not None:
            args.extend(["--append-system-prompt-file", str(system_prompt_file)])
        return args


TOOLS: dict[str, AgentTool] = {ClaudeTool.name: ClaudeTool()}


def available_tools() -> list[str]:
    return list(TOOLS)


def get_tool(name: str) -> AgentTool:
    """Look up a tool capability, raising `ConfigurationError` for unknown names."""

    tool = TOOLS.get(name)
    if tool is None:
        raise ConfigurationError(
            f'Unknown tool "{name}". Available: {", ".join(available_tools())}',
        )
    return tool


def validate_tool_config(config: dict[str, Any]) -> list[str]:
    """Dispatch a raw tool config entry to the validator of the tool it names."""

    name = config.get("tool")
    if not name:
        return ["config.tool: Missing required field"]
    tool = TOOLS.get(name) if isinstance(name, str) else None
    if tool is None:
        return [f'config.tool: Unknown tool "{name}". Available: {", ".join(available_tools())}']
    return tool.validate(config)


def validate_output_schema(schema: object) -> list[str]:
    """Check that an output schema is a well-formed object schema."""

    if schema is None:
        return []
    if not isinstance(schema, dict):
        return ["outputSchema: Must be an object"]
    messages: list[str] = []
    if "type" in schema and schema["type"] != "object":
        messages.append('outputSchema.type: Root type should be "object"')
    if "required" in schema and not isinstance(schema["required"], list):
        messages.append("outputSchema.required: Must be an array")
    if "properties" in schema and not isinstance(schema["properties"], dict):
        messages.append("outputSchema.properties: Must be an object")
    return messages


def json_type_name(value: object) -> str:
    if value is None:
        return "null"
    return _JSON_TYPE_NAMES.get(type(value), type(value).__name__)
