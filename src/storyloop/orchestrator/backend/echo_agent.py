"""Local deterministic agent emitting the stream-json protocol for integration tests.

Accepts the same arguments as the `claude` CLI and ignores the ones it does not
need. Behaviour is tuned through environment variables:

- `STORYLOOP_ECHO_OUTPUT`: `structured` (default) puts the result in the
  `structured_output` field of the `result` event; `text` only emits it as a
  fenced block inside the last assistant message.
- `STORYLOOP_ECHO_TASK_OUTCOME`: `passes` (default), `blocked` or `failed`.
- `STORYLOOP_ECHO_EXIT_CODE`: process exit code, default 0.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from typing import Any

_TASK_ID = re.compile(r'"id":\s*"([^"]+)"')
_HEADING = re.compile(r"^#\s+(.+)$", re.MULTILINE)


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic agent output generation."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--json-schema", default=None)
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--append-system-prompt-file", default=None)
    parser.add_argument("prompt")
    args, _ = parser.parse_known_args(argv)

    schema = json.loads(args.json_schema) if args.json_schema else {}
    required = schema.get("required") or []
    if "userStories" in required:
        result = _conversion_result(args.prompt)
    else:
        result = _task_result(args.prompt)

    output_mode = os.getenv("STORYLOOP_ECHO_OUTPUT", "structured")
    text = f"Done.\n```json\n{json.dumps(result, indent=2)}\n```"
    _emit({"type": "system", "subtype": "init", "session_id": "echo-session"})
    _emit(
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "text", "text": text}],
                "usage": {"input_tokens": 120, "cache_creation_input_tokens": 30},
            },
        },
    )
    result_event: dict[str, Any] = {
        "type": "result",
        "subtype": "success",
        "result": text,
        "usage": {
            "input_tokens": 120,
            "output_tokens": 45,
            "cache_read_input_tokens": 10,
            "cache_creation_input_tokens": 30,
        },
        "total_cost_usd": 0.0125,
        "modelUsage": {"echo-model": {"contextWindow": 100000}},
    }
    if output_mode == "structured":
        result_event["structured_output"] = result
    _emit(result_event)

    exit_code = int(os.getenv("STORYLOOP_ECHO_EXIT_CODE", "0"))
    if exit_code:
        sys.stderr.write(f"echo agent exiting with code {exit_code}\n")
    return exit_code


def _conversion_result(prompt: str) -> dict[str, Any]:
    heading = _HEADING.search(prompt)
    title = heading.group(1).strip() if heading else "Echo work item"
    return {
        "id": "ECHO-1",
        "title": title,
        "branchName": "feature/echo",
        "userStories": [
            {
                "id": "US-001",
                "title": "First step",
                "status": "pending",
                "dependencies": [],
                "passes": False,
            },
            {
                "id": "US-002",
                "title": "Second step",
                "status": "pending",
                "dependencies": ["US-001"],
                "passes": False,
            },
        ],
        "targetDirs": [],
    }


def _task_result(prompt: str) -> dict[str, Any]:
    match = _TASK_ID.search(prompt)
    task_id = match.group(1) if match else "unknown"
    outcome = os.getenv("STORYLOOP_ECHO_TASK_OUTCOME", "passes")
    result: dict[str, Any] = {
        "id": task_id,
        "status": "completed",
        "passes": True,
        "securityCheck": {"passed": True, "issues": []},
        "commits": [
            {
                "repo": "app",
                "repoPath": "./app",
                "commitHash": "abcdef1234567890",
                "message": f"{task_id}: echo",
            },
        ],
        "notes": "",
    }
    if outcome == "blocked":
        result.update({"status": "blocked", "passes": False, "commits": [], "notes": "Waiting"})
    elif outcome == "failed":
        result.update({"status": "failed", "passes": False, "commits": [], "notes": "Broken"})
    return result


def _emit(event: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
