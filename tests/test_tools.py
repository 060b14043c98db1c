from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from storyloop.orchestrator.backend.tools import (
    ClaudeTool,
    get_tool,
    validate_output_schema,
    validate_tool_config,
)
from storyloop.orchestrator.errors import ConfigurationError
from storyloop.orchestrator.models import ToolConfig

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Tool Capabilities"),
]


def test_build_args_for_streaming_claude() -> None:
    schema = {"type": "object", "required": ["id"]}
    config = ToolConfig(
        tool="claude",
        options={"dangerouslySkipPermissions": True, "verbose": True},
        output_schema=schema,
    )

    args = ClaudeTool().build_args(config, system_prompt_file=Path("/cfg/system.prompt.md"))

    assert args == [
        "--print",
        "--dangerously-skip-permissions",
        "--verbose",
        "--output-format",
        "stream-json",
        "--json-schema",
        json.dumps(schema),
        "--append-system-prompt-file",
        "/cfg/system.prompt.md",
    ]


def test_build_args_respects_disabled_permissions_skip() -> None:
    config = ToolConfig(tool="claude", options={"dangerouslySkipPermissions": False})

    args = ClaudeTool().build_args(config, streaming=False)

    assert args == ["--print"]


def test_claude_option_validation_messages() -> None:
    messages = ClaudeTool().validate(
        {
            "tool": "claude",
            "options": {"verbose": "yes", "outputFormat": "xml", "temperature": 1},
        },
    )

    assert messages == [
        'config.options.verbose: Must be type "boolean", got "string"',
        'config.options.outputFormat: Invalid value "xml". Allowed: stream-json, json, text',
        "config.options.temperature: Unknown option",
    ]


def test_skip_context_must_be_boolean() -> None:
    assert ClaudeTool().validate_skip_context({"tool": "claude", "skipContext": True}) == []
    assert ClaudeTool().validate_skip_context({"tool": "claude", "skipContext": "yes"}) == [
        'config.skipContext: Must be type "boolean", got "string"',
    ]


def test_unknown_tool_lists_available_tools() -> None:
    assert validate_tool_config({"tool": "codex"}) == [
        'config.tool: Unknown tool "codex". Available: claude',
    ]
    assert validate_tool_config({}) == ["config.tool: Missing required field"]
    with pytest.raises(ConfigurationError, match="Available: claude"):
        get_tool("codex")


def test_output_schema_shape_checks() -> None:
    assert validate_output_schema(None) == []
    assert validate_output_schema({"type": "object", "required": ["id"], "properties": {}}) == []
    assert validate_output_schema({"type": "array", "required": "id", "properties": []}) == [
        'outputSchema.type: Root type should be "object"',
        "outputSchema.required: Must be an array",
        "outputSchema.properties: Must be an object",
    ]
