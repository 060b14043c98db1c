"""JSON document contracts for work items and progress records."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from storyloop.orchestrator.errors import SchemaError
from storyloop.orchestrator.models import (
    LastError,
    ProgressRecord,
    ProgressStatus,
    Subtask,
    SubtaskStatus,
    TargetDir,
    WorkItem,
)

WORK_ITEM_REQUIRED_FIELDS = ("id", "title", "branchName", "userStories")
PROGRESS_REQUIRED_FIELDS = ("prdId", "status", "startedAt", "completedTasks", "totalTasks")

_WORK_ITEM_KNOWN_KEYS = frozenset(
    {"id", "prdId", "title", "branchName", "workingDir", "targetDirs", "userStories"},
)
_SUBTASK_KNOWN_KEYS = frozenset(
    {
        "id",
        "title",
        "status",
        "dependencies",
        "affectedRepos",
        "acceptanceCriteria",
        "commits",
        "passes",
        "notes",
    },
)


def write_json(path: Path, payload: Any) -> None:
    """Persist JSON payload using deterministic formatting.

    The document is written to a sibling temporary file and moved into place,
    so readers never observe a partially written file.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", "utf-8")
    os.replace(tmp_path, path)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def work_item_from_document(raw: dict[str, Any]) -> WorkItem:
    """Deserialize and validate a work item document."""

    missing = [key for key in WORK_ITEM_REQUIRED_FIELDS if key not in raw]
    if missing:
        raise SchemaError(
            f"Work item missing required fields: {', '.join(missing)}",
            violations=[f"work item: Missing required key {key!r}" for key in missing],
        )
    item_id = raw["id"]
    if not isinstance(item_id, str) or not item_id.strip():
        raise SchemaError("work item id must be a non-empty string")
    title = raw["title"]
    if not isinstance(title, str):
        raise SchemaError("work item title must be a string")
    branch_name = raw["branchName"]
    if not isinstance(branch_name, str):
        raise SchemaError("work item branchName must be a string")
    prd_id = raw.get("prdId")
    if prd_id is not None and not isinstance(prd_id, str):
        raise SchemaError("work item prdId must be a string when provided")
    working_dir = raw.get("workingDir") or ""
    if not isinstance(working_dir, str):
        raise SchemaError("work item workingDir must be a string")

    raw_stories = raw["userStories"]
    if not isinstance(raw_stories, list):
        raise SchemaError("work item userStories must be an array")
    subtasks = [subtask_from_document(item, index) for index, item in enumerate(raw_stories)]
    _check_subtask_graph(subtasks)

    return WorkItem(
        id=item_id,
        prd_id=prd_id,
        title=title,
        branch_name=branch_name,
        working_dir=working_dir,
        target_dirs=_target_dirs_from_document(raw.get("targetDirs")),
        subtasks=subtasks,
        extra={key: value for key, value in raw.items() if key not in _WORK_ITEM_KNOWN_KEYS},
    )


def work_item_to_document(work_item: WorkItem) -> dict[str, Any]:
    document: dict[str, Any] = {"id": work_item.id}
    if work_item.prd_id is not None:
        document["prdId"] = work_item.prd_id
    document.update(
        {
            "title": work_item.title,
            "branchName": work_item.branch_name,
            "workingDir": work_item.working_dir,
            "targetDirs": [target_dir_to_document(entry) for entry in work_item.target_dirs],
            "userStories": [subtask_to_document(subtask) for subtask in work_item.subtasks],
        },
    )
    document.update(work_item.extra)
    return document


def subtask_from_document(raw: object, index: int) -> Subtask:  # noqa: C901
    """Deserialize one `userStories` entry."""

    if not isinstance(raw, dict):
        raise SchemaError(f"userStories[{index}] must be an object")
    subtask_id = raw.get("id")
    if not isinstance(subtask_id, str) or not subtask_id.strip():
        raise SchemaError(f"userStories[{index}].id must be a non-empty string")
    title = raw.get("title", "")
    if not isinstance(title, str):
        raise SchemaError(f"userStories[{index}].title must be a string")

    raw_status = raw.get("status", SubtaskStatus.PENDING.value)
    try:
        status = SubtaskStatus(raw_status)
    except ValueError as error:
        allowed = ", ".join(item.value for item in SubtaskStatus)
        raise SchemaError(
            f"userStories[{index}].status {raw_status!r} is invalid. Allowed: {allowed}",
        ) from error

    dependencies = _string_list(raw.get("dependencies"), f"userStories[{index}].dependencies")
    affected_repos = _string_list(
        raw.get("affectedRepos"),
        f"userStories[{index}].affectedRepos",
    )
    acceptance = raw.get("acceptanceCriteria") or []
    if not isinstance(acceptance, list):
        raise SchemaError(f"userStories[{index}].acceptanceCriteria must be an array")
    commits = raw.get("commits") or []
    if not isinstance(commits, list) or not all(isinstance(item, dict) for item in commits):
        raise SchemaError(f"userStories[{index}].commits must be an array of objects")
    passes = raw.get("passes", False)
    if not isinstance(passes, bool):
        raise SchemaError(f"userStories[{index}].passes must be a boolean")
    notes = raw.get("notes") or ""
    if not isinstance(notes, str):
        notes = json.dumps(notes, ensure_ascii=False)

    return Subtask(
        id=subtask_id,
        title=title,
        status=status,
        dependencies=dependencies,
        affected_repos=affected_repos,
        acceptance_criteria=list(acceptance),
        commits=[dict(item) for item in commits],
        passes=passes,
        notes=notes,
        extra={key: value for key, value in raw.items() if key not in _SUBTASK_KNOWN_KEYS},
    )


def subtask_to_document(subtask: Subtask) -> dict[str, Any]:
    document: dict[str, Any] = {
        "id": subtask.id,
        "title": subtask.title,
        "status": subtask.status.value,
        "dependencies": list(subtask.dependencies),
        "affectedRepos": list(subtask.affected_repos),
        "acceptanceCriteria": list(subtask.acceptance_criteria),
        "commits": [dict(item) for item in subtask.commits],
        "passes": subtask.passes,
        "notes": subtask.notes,
    }
    document.update(subtask.extra)
    return document


def merge_subtask_result(subtask: Subtask, result: dict[str, Any], index: int = 0) -> Subtask:
    """Overlay an agent task result on a subtask, keeping its id and dependencies."""

    document = subtask_to_document(subtask)
    document.update(result)
    document["id"] = subtask.id
    document["dependencies"] = list(subtask.dependencies)
    return subtask_from_document(document, index)


def target_dir_to_document(entry: TargetDir) -> dict[str, str]:
    return {"path": entry.path, "name": entry.name, "description": entry.description}


def progress_from_document(raw: dict[str, Any]) -> ProgressRecord:
    """Deserialize and validate a progress document."""

    missing = [key for key in PROGRESS_REQUIRED_FIELDS if key not in raw]
    if missing:
        raise SchemaError(f"Progress missing required fields: {', '.join(missing)}")
    try:
        status = ProgressStatus(raw["status"])
    except ValueError as error:
        raise SchemaError(f"progress.status {raw['status']!r} is invalid") from error
    completed = _string_list(raw["completedTasks"], "progress.completedTasks")
    total = raw["totalTasks"]
    if not isinstance(total, int) or isinstance(total, bool) or total < 0:
        raise SchemaError("progress.totalTasks must be a non-negative integer")

    last_error: LastError | None = None
    raw_error = raw.get("lastError")
    if raw_error is not None:
        if not isinstance(raw_error, dict):
            raise SchemaError("progress.lastError must be an object or null")
        last_error = LastError(
            task_id=str(raw_error.get("taskId", "")),
            message=str(raw_error.get("message", "")),
            timestamp=str(raw_error.get("timestamp", "")),
        )

    return ProgressRecord(
        prd_id=str(raw["prdId"]),
        status=status,
        started_at=str(raw["startedAt"]),
        completed_at=_optional_str(raw.get("completedAt")),
        completed_tasks=completed,
        current_task=_optional_str(raw.get("currentTask")),
        total_tasks=total,
        last_error=last_error,
        template_set=_optional_str(raw.get("templateSet")),
        config_path=_optional_str(raw.get("configPath")),
        summary=_optional_str(raw.get("summary")),
    )


def progress_to_document(progress: ProgressRecord) -> dict[str, Any]:
    last_error = progress.last_error
    return {
        "prdId": progress.prd_id,
        "status": progress.status.value,
        "startedAt": progress.started_at,
        "completedAt": progress.completed_at,
        "completedTasks": list(progress.completed_tasks),
        "currentTask": progress.current_task,
        "totalTasks": progress.total_tasks,
        "lastError": (
            {
                "taskId": last_error.task_id,
                "message": last_error.message,
                "timestamp": last_error.timestamp,
            }
            if last_error is not None
            else None
        ),
        "summary": progress.summary,
        "templateSet": progress.template_set,
        "configPath": progress.config_path,
    }


def _target_dirs_from_document(raw: object) -> list[TargetDir]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise SchemaError("work item targetDirs must be an array")
    entries: list[TargetDir] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise SchemaError(f"targetDirs[{index}] must be an object")
        name = item.get("name")
        path = item.get("path")
        if not isinstance(name, str) or not name.strip():
            raise SchemaError(f"targetDirs[{index}].name must be a non-empty string")
        if not isinstance(path, str) or not path.strip():
            raise SchemaError(f"targetDirs[{index}].path must be a non-empty string")
        description = item.get("description") or ""
        entries.append(TargetDir(name=name, path=path, description=str(description)))
    return entries


def _check_subtask_graph(subtasks: list[Subtask]) -> None:
    seen: set[str] = set()
    duplicates: list[str] = []
    for subtask in subtasks:
        if subtask.id in seen:
            duplicates.append(subtask.id)
        seen.add(subtask.id)
    if duplicates:
        raise SchemaError(f"Duplicate subtask ids: {', '.join(sorted(set(duplicates)))}")

    violations = [
        f"{subtask.id} depends on unknown subtask {dependency!r}"
        for subtask in subtasks
        for dependency in subtask.dependencies
        if dependency not in seen
    ]
    if violations:
        raise SchemaError("Invalid subtask dependencies", violations=violations)


def _string_list(raw: object, label: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise SchemaError(f"{label} must be an array of strings")
    return list(raw)


def _optional_str(raw: object) -> str | None:
    if raw is None:
        return None
    return str(raw)
