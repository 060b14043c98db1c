"""File-backed durable state for one work item.

For a source document at `<dir>/<stem>.<ext...>` the state lives in
`<dir>/<stem>/` with four documents: `prd.json` (work item),
`progress.json` (progress record), `task.log` and `error.log`. The logs are
JSON arrays rewritten in full on every append, which is only safe with a
single writer.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from storyloop.orchestrator.contracts import (
    load_json,
    progress_from_document,
    progress_to_document,
    work_item_from_document,
    work_item_to_document,
    write_json,
)
from storyloop.orchestrator.errors import SchemaError
from storyloop.orchestrator.models import Phase, ProgressRecord, WorkItem, utc_now_iso
from storyloop.orchestrator.usage import AgentUsage

logger = logging.getLogger(__name__)

WORK_ITEM_FILE = "prd.json"
PROGRESS_FILE = "progress.json"
TASK_LOG_FILE = "task.log"
ERROR_LOG_FILE = "error.log"
DEFAULT_OUTPUT_PREVIEW_CHARS = 500


def project_name_for(source_path: Path) -> str:
    """Return the source filename text before the first `.`."""

    return source_path.name.split(".", 1)[0]


def state_dir_for(source_path: Path) -> Path:
    return source_path.parent / project_name_for(source_path)


class LoadOutcome(str, Enum):
    """Result classification of a state load."""

    ABSENT = "absent"
    VALID = "valid"
    INVALID = "invalid"


@dataclass(slots=True)
class LoadedState:
    """Persisted work item and progress, when both are present and parse."""

    outcome: LoadOutcome
    state_dir: Path
    work_item: WorkItem | None = None
    progress: ProgressRecord | None = None
    reason: str | None = None


class StateStore:
    """Read and write the state directory of work items."""

    def __init__(
        self,
        *,
        output_preview_chars: int = DEFAULT_OUTPUT_PREVIEW_CHARS,
        log_full_output: bool = True,
    ) -> None:
        self._output_preview_chars = output_preview_chars
        self._log_full_output = log_full_output

    def load(self, source_path: Path) -> LoadedState:
        state_dir = state_dir_for(source_path)
        work_item_path = state_dir / WORK_ITEM_FILE
        progress_path = state_dir / PROGRESS_FILE
        has_work_item = work_item_path.is_file()
        has_progress = progress_path.is_file()
        if not has_work_item and not has_progress:
            return LoadedState(outcome=LoadOutcome.ABSENT, state_dir=state_dir)
        if not (has_work_item and has_progress):
            missing = PROGRESS_FILE if has_work_item else WORK_ITEM_FILE
            return LoadedState(
                outcome=LoadOutcome.INVALID,
                state_dir=state_dir,
                reason=f"{missing} is missing",
            )
        try:
            work_item = work_item_from_document(load_json(work_item_path))
            progress = progress_from_document(load_json(progress_path))
        except (OSError, TypeError, UnicodeDecodeError, json.JSONDecodeError, SchemaError) as error:
            return LoadedState(outcome=LoadOutcome.INVALID, state_dir=state_dir, reason=str(error))
        return LoadedState(
            outcome=LoadOutcome.VALID,
            state_dir=state_dir,
            work_item=work_item,
            progress=progress,
        )

    def save(self, state_dir: Path, work_item: WorkItem, progress: ProgressRecord) -> None:
        """Persist the work item and its progress together."""

        write_json(state_dir / WORK_ITEM_FILE, work_item_to_document(work_item))
        write_json(state_dir / PROGRESS_FILE, progress_to_document(progress))

    def append_task_log(  # noqa: PLR0913
        self,
        state_dir: Path,
        *,
        task_id: str,
        phase: Phase,
        output: str,
        usage: AgentUsage | None,
        error: str | None = None,
        context_management: Any = None,
    ) -> None:
        entry = {
            "timestamp": utc_now_iso(),
            "taskId": task_id,
            "phase": phase.value,
            "usage": usage.to_dict() if usage is not None else None,
            "error": error,
            "contextManagement": context_management,
            "outputLength": len(output),
            "outputPreview": output[: self._output_preview_chars] or None,
            "fullOutput": (output or None) if self._log_full_output else None,
        }
        self._append(state_dir / TASK_LOG_FILE, entry)

    def append_error(
        self,
        state_dir: Path,
        *,
        task_id: str,
        error_type: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        entry = {
            "timestamp": utc_now_iso(),
            "taskId": task_id,
            "errorType": error_type,
            "message": message,
            "details": details or {},
        }
        self._append(state_dir / ERROR_LOG_FILE, entry)

    def read_log(self, path: Path) -> list[Any]:
        if not path.exists():
            return []
        try:
            payload = json.loads(path.read_text("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Log file %s is not readable JSON; starting a new list", path)
            return []
        if not isinstance(payload, list):
            logger.warning("Log file %s does not hold a JSON array; starting a new list", path)
            return []
        return payload

    def _append(self, path: Path, entry: dict[str, Any]) -> None:
        entries = self.read_log(path)
        entries.append(entry)
        write_json(path, entries)
