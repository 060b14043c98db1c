"""Dependency-gated selection of the next subtask to execute."""

from __future__ import annotations

from collections.abc import Collection, Sequence
from enum import Enum

from storyloop.orchestrator.models import Subtask


class GraphState(str, Enum):
    """Classification of a work item when no subtask is eligible."""

    DONE = "done"
    BLOCKED = "blocked"


def select_next(subtasks: Sequence[Subtask], completed_ids: Collection[str]) -> Subtask | None:
    """Return the first eligible subtask in declaration order, or None.

    A subtask is eligible when it is not already completed (by id or status),
    has not failed, and every dependency id is in `completed_ids`.
    """

    completed = set(completed_ids)
    for subtask in subtasks:
        if subtask.id in completed or subtask.status.is_terminal:
            continue
        if all(dependency in completed for dependency in subtask.dependencies):
            return subtask
    return None


def is_terminal(subtask: Subtask, completed_ids: Collection[str]) -> bool:
    return subtask.id in completed_ids or subtask.status.is_terminal


def all_terminal(subtasks: Sequence[Subtask], completed_ids: Collection[str]) -> bool:
    completed = set(completed_ids)
    return all(is_terminal(subtask, completed) for subtask in subtasks)


def classify_idle(subtasks: Sequence[Subtask], completed_ids: Collection[str]) -> GraphState:
    """Tell apart a finished work item from a stuck one."""

    if all_terminal(subtasks, completed_ids):
        return GraphState.DONE
    return GraphState.BLOCKED


def unsatisfied_dependencies(
    subtasks: Sequence[Subtask],
    completed_ids: Collection[str],
) -> dict[str, list[str]]:
    """Map each non-terminal subtask id to its dependency ids not yet completed."""

    completed = set(completed_ids)
    missing: dict[str, list[str]] = {}
    for subtask in subtasks:
        if is_terminal(subtask, completed):
            continue
        missing[subtask.id] = [dep for dep in subtask.dependencies if dep not in completed]
    return missing
