from __future__ import annotations

import allure
import pytest

from storyloop.orchestrator.errors import ConsistencyError, StateTransitionError
from storyloop.orchestrator.exit_codes import ExitCode
from storyloop.orchestrator.models import (
    ProgressRecord,
    ProgressStatus,
    Subtask,
    ToolConfig,
    WorkItem,
)

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Progress State Machine"),
]


def _progress(status: ProgressStatus = ProgressStatus.INITIALIZED) -> ProgressRecord:
    return ProgressRecord(
        prd_id="WI-1",
        status=status,
        started_at="2026-10-01T10:00:00+00:00",
        total_tasks=2,
    )


def _work_item() -> WorkItem:
    return WorkItem(
        id="WI-1",
        title="Demo",
        branch_name="feature/demo",
        subtasks=[Subtask(id="A", title="one"), Subtask(id="B", title="two")],
    )


def test_allowed_transitions_follow_lifecycle() -> None:
    progress = _progress()

    progress.transition(ProgressStatus.RUNNING)
    progress.transition(ProgressStatus.PAUSED)
    progress.transition(ProgressStatus.RUNNING)
    progress.transition(ProgressStatus.RUNNING)
    progress.transition(ProgressStatus.COMPLETED)

    assert progress.status is ProgressStatus.COMPLETED


@pytest.mark.parametrize(
    ("start", "target"),
    [
        (ProgressStatus.INITIALIZED, ProgressStatus.COMPLETED),
        (ProgressStatus.PAUSED, ProgressStatus.BLOCKED),
        (ProgressStatus.COMPLETED, ProgressStatus.RUNNING),
    ],
)
def test_transition_outside_table_is_rejected(
    start: ProgressStatus,
    target: ProgressStatus,
) -> None:
    progress = _progress(start)

    with pytest.raises(StateTransitionError, match="Illegal progress transition") as error:
        progress.transition(target)

    assert progress.status is start
    assert error.value.exit_code == ExitCode.INVALID_ARGS


def test_record_completion_is_idempotent_and_clears_current_task() -> None:
    progress = _progress(ProgressStatus.RUNNING)
    progress.current_task = "A"

    progress.record_completion("A")
    progress.record_completion("A")

    assert progress.completed_tasks == ["A"]
    assert progress.current_task is None


def test_check_against_rejects_unknown_and_duplicate_ids() -> None:
    work_item = _work_item()

    with pytest.raises(ConsistencyError, match="unknown subtasks: Z"):
        ProgressRecord(
            prd_id="WI-1",
            status=ProgressStatus.RUNNING,
            started_at="now",
            total_tasks=2,
            completed_tasks=["A", "Z"],
        ).check_against(work_item)

    with pytest.raises(ConsistencyError, match="duplicate"):
        ProgressRecord(
            prd_id="WI-1",
            status=ProgressStatus.RUNNING,
            started_at="now",
            total_tasks=2,
            completed_tasks=["A", "A"],
        ).check_against(work_item)


def test_work_item_helpers() -> None:
    work_item = _work_item()
    work_item.subtasks[1].commits = [{"repo": "app", "commitHash": "abc"}]

    assert work_item.display_id == "WI-1"
    assert work_item.index_of("B") == 1
    assert work_item.all_commits() == [{"repo": "app", "commitHash": "abc"}]
    assert work_item.all_commits({"A"}) == []


def test_tool_config_required_keys() -> None:
    config = ToolConfig.from_dict(
        {"tool": "claude", "outputSchema": {"type": "object", "required": ["id", "passes"]}},
    )

    assert config.required_keys == ["id", "passes"]
    assert ToolConfig(tool="claude").required_keys == []
