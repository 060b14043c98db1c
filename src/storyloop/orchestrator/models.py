"""Domain models for work items, subtasks and run progress."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from storyloop.orchestrator.errors import ConsistencyError, StateTransitionError


def utc_now() -> datetime:
    """Return timezone-aware current UTC time."""

    return datetime.now(tz=UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


class SubtaskStatus(str, Enum):
    """Per-subtask status reported by the agent."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (SubtaskStatus.COMPLETED, SubtaskStatus.FAILED)


class ProgressStatus(str, Enum):
    """Durable run lifecycle states."""

    INITIALIZED = "initialized"
    RUNNING = "running"
    PAUSED = "paused"
    BLOCKED = "blocked"
    COMPLETED = "completed"


# RUNNING -> RUNNING is the resume path for a record left behind by a crash.
ALLOWED_TRANSITIONS: dict[ProgressStatus, frozenset[ProgressStatus]] = {
    ProgressStatus.INITIALIZED: frozenset({ProgressStatus.RUNNING}),
    ProgressStatus.RUNNING: frozenset(
        {
            ProgressStatus.RUNNING,
            ProgressStatus.COMPLETED,
            ProgressStatus.PAUSED,
            ProgressStatus.BLOCKED,
        },
    ),
    ProgressStatus.PAUSED: frozenset({ProgressStatus.RUNNING}),
    ProgressStatus.BLOCKED: frozenset({ProgressStatus.RUNNING}),
    ProgressStatus.COMPLETED: frozenset(),
}


class Phase(str, Enum):
    """Agent invocation modes, one per template-set phase."""

    CONVERSION = "conversion"
    TASK = "task"


@dataclass(slots=True)
class ToolConfig:
    """One agent tool entry of a template-set phase."""

    tool: str
    options: dict[str, Any] = field(default_factory=dict)
    output_schema: dict[str, Any] | None = None
    skip_context: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ToolConfig:
        """Build from an already validated set document entry."""

        return cls(
            tool=str(raw["tool"]),
            options=dict(raw.get("options") or {}),
            output_schema=raw.get("outputSchema"),
            skip_context=bool(raw.get("skipContext", False)),
        )

    @property
    def required_keys(self) -> list[str]:
        if not self.output_schema:
            return []
        required = self.output_schema.get("required")
        if not isinstance(required, list):
            return []
        return [str(key) for key in required]


@dataclass(slots=True)
class TargetDir:
    """Repository directory the work item may touch."""

    name: str
    path: str
    description: str = ""


@dataclass(slots=True)
class Subtask:
    """One dependency-gated step of a work item."""

    id: str
    title: str
    status: SubtaskStatus = SubtaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    affected_repos: list[str] = field(default_factory=list)
    acceptance_criteria: list[Any] = field(default_factory=list)
    commits: list[dict[str, Any]] = field(default_factory=list)
    passes: bool = False
    notes: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkItem:
    """Structured work item materialized from a feature request document."""

    id: str
    title: str
    branch_name: str
    subtasks: list[Subtask]
    prd_id: str | None = None
    working_dir: str = ""
    target_dirs: list[TargetDir] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def subtask_ids(self) -> list[str]:
        return [subtask.id for subtask in self.subtasks]

    @property
    def display_id(self) -> str:
        return self.prd_id or self.id

    def index_of(self, subtask_id: str) -> int:
        for index, subtask in enumerate(self.subtasks):
            if subtask.id == subtask_id:
                return index
        raise KeyError(subtask_id)

    def all_commits(self, subtask_ids: set[str] | None = None) -> list[dict[str, Any]]:
        commits: list[dict[str, Any]] = []
        for subtask in self.subtasks:
            if subtask_ids is not None and subtask.id not in subtask_ids:
                continue
            commits.extend(subtask.commits)
        return commits


@dataclass(slots=True)
class LastError:
    """Most recent subtask failure recorded in progress."""

    task_id: str
    message: str
    timestamp: str


@dataclass(slots=True)
class ProgressRecord:
    """Durable run progress for one work item."""

    prd_id: str
    status: ProgressStatus
    started_at: str
    total_tasks: int
    completed_tasks: list[str] = field(default_factory=list)
    current_task: str | None = None
    completed_at: str | None = None
    last_error: LastError | None = None
    template_set: str | None = None
    config_path: str | None = None
    summary: str | None = None

    def transition(self, target: ProgressStatus) -> None:
        """Move to `target`, rejecting changes missing from the transition table."""

        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise StateTransitionError(
                f"Illegal progress transition {self.status.value} -> {target.value}",
            )
        self.status = target

    def record_completion(self, task_id: str) -> None:
        if task_id not in self.completed_tasks:
            self.completed_tasks.append(task_id)
        self.current_task = None

    def record_failure(self, task_id: str, message: str) -> None:
        self.current_task = None
        self.last_error = LastError(task_id=task_id, message=message, timestamp=utc_now_iso())

    def check_against(self, work_item: WorkItem) -> None:
        """Raise when completed ids are duplicated or unknown to the work item."""

        known = set(work_item.subtask_ids)
        if len(set(self.completed_tasks)) != len(self.completed_tasks):
            raise ConsistencyError("progress.completedTasks contains duplicate ids")
        unknown = [task_id for task_id in self.completed_tasks if task_id not in known]
        if unknown:
            raise ConsistencyError(
                f"progress.completedTasks references unknown subtasks: {', '.join(unknown)}",
            )
