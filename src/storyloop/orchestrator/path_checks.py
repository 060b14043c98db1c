"""Filesystem checks for repository paths referenced by a converted work item."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from storyloop.orchestrator.models import WorkItem


@dataclass(slots=True)
class PathValidation:
    """Errors block initialization; warnings are advisory."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_paths(work_item: WorkItem, working_dir: Path) -> PathValidation:
    result = PathValidation()
    repo_paths: dict[str, Path] = {}

    for entry in work_item.target_dirs:
        path = _resolve(working_dir, entry.path)
        repo_paths[entry.name] = path
        if not path.exists():
            result.errors.append(f'targetDir "{entry.name}": Directory not found at {entry.path}')
            continue
        if not (path / ".git").exists():
            result.warnings.append(
                f'targetDir "{entry.name}": No .git folder found (not a git repository)',
            )

    for subtask in work_item.subtasks:
        code_context = subtask.extra.get("codeContext") or []
        if not isinstance(code_context, list):
            continue
        for item in code_context:
            if not isinstance(item, dict):
                continue
            repo = item.get("repo")
            file_path = str(item.get("path", ""))
            repo_path = repo_paths.get(repo) if isinstance(repo, str) else None
            if repo_path is None:
                result.errors.append(
                    f'{subtask.id} codeContext: Unknown repo "{repo}" for path "{file_path}"',
                )
                continue
            if not (repo_path / file_path).exists():
                result.warnings.append(
                    f'{subtask.id} codeContext: File not found "{repo}/{file_path}"',
                )

    for subtask in work_item.subtasks:
        for repo_name in subtask.affected_repos:
            if repo_name not in repo_paths:
                result.errors.append(f'{subtask.id} affectedRepos: Unknown repo "{repo_name}"')

    return result


def _resolve(working_dir: Path, raw: str) -> Path:
    path = Path(raw)
    if path.is_absolute():
        return path
    return working_dir / path
