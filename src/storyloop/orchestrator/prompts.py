"""Prompt templates and placeholder rendering for agent phases."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from storyloop.orchestrator.contracts import subtask_to_document
from storyloop.orchestrator.models import Subtask, TargetDir

TASK_CONTEXT_DISABLED = "Task context disabled."

DEFAULT_CONVERTER_PROMPT = """\
You convert a feature request document into a structured work item.

Project: {{PROJECT_NAME}}
Source file: {{PRD_FILENAME}}
Working directory: {{WORKING_DIR}}

Repositories available in the working directory:
{{TARGET_DIRS}}

Split the request into small user stories that can each be implemented and
committed in one session. Order them so that every story only depends on
stories declared before it, and list those ids in `dependencies`.

For every story provide: id, title, description, status ("pending"),
dependencies, affectedRepos (names from the list above), acceptanceCriteria,
codeContext ([{repo, path, purpose}]), constraints and passes (false).

Set `constraintsValid` to false and explain in `constraintErrors` when the
request cannot be implemented as written.

Feature request:

{{PRD_CONTENT}}
"""

DEFAULT_EXECUTOR_PROMPT = """\
You implement exactly one user story of work item {{PRD_ID}} ({{PROJECT_NAME}}).

Current story:
{{CURRENT_TASK}}

Branch: {{BRANCH_NAME}}
Working directory: {{WORKING_DIR}}
State directory: {{STATE_DIR}}

Repositories:
{{TARGET_DIRS}}

Repositories affected by this story:
{{AFFECTED_REPOS}}

Previously completed stories:
{{COMPLETED_TASKS}}

Relevant code:
{{CODE_CONTEXT}}

Constraints:
{{CONSTRAINTS}}

Pattern to follow:
{{PATTERN_EXAMPLE}}

Work on branch {{BRANCH_NAME}} in every affected repository, commit with a
message starting with "{{TASK_ID}}:", and report the outcome with the fields
id, status, passes, securityCheck {passed, issues}, commits
[{repo, repoPath, commitHash, message}], changedFiles and notes. Set status to
"blocked" when the story cannot proceed without outside help.
"""

DEFAULT_SYSTEM_PROMPT = """\
Never print secrets or credentials. Keep every change inside the repositories
listed in the prompt. Answer with the requested JSON object only.
"""


def build_prompt(template: str, replacements: Mapping[str, str]) -> str:
    """Replace every `{{KEY}}` occurrence with its value."""

    prompt = template
    for key, value in replacements.items():
        prompt = prompt.replace(f"{{{{{key}}}}}", value)
    return prompt


def format_completed_tasks(subtasks: Sequence[Subtask], completed_ids: Sequence[str]) -> str:
    if not completed_ids:
        return "None - this is the first task."
    by_id = {subtask.id: subtask for subtask in subtasks}
    lines: list[str] = []
    for task_id in completed_ids:
        subtask = by_id.get(task_id)
        if subtask is None:
            lines.append(f"- {task_id}: (not found)")
            continue
        commit_info = ", ".join(format_commit(commit) for commit in subtask.commits) or "none"
        lines.append(f"- {task_id}: {subtask.title} (commits: {commit_info})")
    return "\n".join(lines)


def format_target_dirs(target_dirs: Sequence[TargetDir]) -> str:
    if not target_dirs:
        return "None discovered."
    return "\n".join(
        f"- {entry.name}: {entry.path} ({entry.description or 'no description'})"
        for entry in target_dirs
    )


def format_affected_repos(affected_repos: Sequence[str], target_dirs: Sequence[TargetDir]) -> str:
    if not affected_repos:
        return "All available repositories may be affected."
    by_name = {entry.name: entry for entry in target_dirs}
    lines: list[str] = []
    for name in affected_repos:
        entry = by_name.get(name)
        lines.append(f"- {name}: {entry.path}" if entry else f"- {name}: (path unknown)")
    return "\n".join(lines)


def format_code_context(code_context: Iterable[Any] | None) -> str:
    entries = [entry for entry in code_context or [] if isinstance(entry, dict)]
    if not entries:
        return "None provided."
    return "\n".join(
        f"- [{entry.get('repo')}] {entry.get('path')}: {entry.get('purpose', '')}"
        for entry in entries
    )


def format_constraints(constraints: Iterable[Any] | None) -> str:
    items = list(constraints or [])
    if not items:
        return "None provided."
    return "\n".join(f"- {item}" for item in items)


def format_current_task(subtask: Subtask) -> str:
    return json.dumps(subtask_to_document(subtask), ensure_ascii=False, indent=2)


def format_commit(commit: Mapping[str, Any]) -> str:
    commit_hash = commit.get("commitHash")
    short_hash = str(commit_hash)[:7] if commit_hash else "none"
    return f"{commit.get('repo')}({commit.get('repoPath')}):{short_hash}"
