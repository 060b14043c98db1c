"""Execution engine: converts a work item source and runs its subtasks to completion."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from storyloop.config import Settings
from storyloop.orchestrator.backend.base import (
    AgentBackend,
    AgentInvocation,
    AgentInvocationResult,
)
from storyloop.orchestrator.contracts import (
    merge_subtask_result,
    target_dir_to_document,
    work_item_from_document,
)
from storyloop.orchestrator.errors import (
    ConfigurationError,
    ConsistencyError,
    ContextCompactedError,
    DependencyUnsatisfiable,
    SchemaError,
    SecurityPolicyViolation,
    StoryloopError,
    TransportError,
    WorkItemSourceNotFound,
)
from storyloop.orchestrator.exit_codes import ExitCode
from storyloop.orchestrator.failure_classifier import classify_transport_failure
from storyloop.orchestrator.graph import (
    GraphState,
    classify_idle,
    select_next,
    unsatisfied_dependencies,
)
from storyloop.orchestrator.models import (
    Phase,
    ProgressRecord,
    ProgressStatus,
    Subtask,
    SubtaskStatus,
    TargetDir,
    ToolConfig,
    WorkItem,
    utc_now,
    utc_now_iso,
)
from storyloop.orchestrator.output_fallback import extract_structured_result
from storyloop.orchestrator.path_checks import validate_paths
from storyloop.orchestrator.prompts import (
    TASK_CONTEXT_DISABLED,
    build_prompt,
    format_affected_repos,
    format_code_context,
    format_completed_tasks,
    format_constraints,
    format_current_task,
    format_target_dirs,
)
from storyloop.orchestrator.set_config import (
    CONVERTER_TEMPLATE,
    DEFAULT_SET_NAME,
    EXECUTOR_TEMPLATE,
    SetConfig,
    load_set_config,
    load_template,
    resolve_set_name,
    system_prompt_path,
)
from storyloop.orchestrator.state_store import (
    LoadedState,
    LoadOutcome,
    StateStore,
    project_name_for,
)
from storyloop.orchestrator.usage import UsageAccumulator

logger = logging.getLogger(__name__)

PRD_ID_PATTERN = re.compile(r"^(PRD-[A-Z]+-\d+)")
CONVERSION_TASK_ID = "conversion"
CONTEXT_COMPACTED_MESSAGE = (
    "Context was compacted - task too large. Consider splitting into smaller tasks."
)


def prd_id_from_filename(source_path: Path) -> str | None:
    match = PRD_ID_PATTERN.match(source_path.name)
    return match.group(1) if match else None


def make_task_list_id(prd_id: str, task_id: str | None = None) -> str:
    """Build the agent task-list id: `<prd>-convert-<stamp>` or `<prd>-<task>-<stamp>`."""

    stamp = utc_now().astimezone().strftime("%Y%m%d-%H%M")
    if task_id is None:
        return f"{prd_id}-convert-{stamp}"
    return f"{prd_id}-{task_id}-{stamp}"


@dataclass(slots=True)
class RunRequest:
    """One work item to convert (when needed) and execute."""

    source_path: Path
    working_dir: Path
    set_name: str | None = None
    config_dir: Path | None = None
    target_dirs: list[TargetDir] = field(default_factory=list)
    dry_run: bool = False


@dataclass(slots=True)
class PlanEntry:
    """Dry-run line for one subtask."""

    position: int
    subtask: Subtask
    done: bool


@dataclass(slots=True)
class RunOutcome:
    """Result of running one work item."""

    source_path: Path
    exit_code: ExitCode
    usage: UsageAccumulator
    work_item: WorkItem | None = None
    progress: ProgressRecord | None = None
    state_dir: Path | None = None
    stopped_at: str | None = None
    message: str | None = None
    plan: list[PlanEntry] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == ExitCode.SUCCESS

    @property
    def status(self) -> ProgressStatus | None:
        return self.progress.status if self.progress is not None else None


@dataclass(slots=True)
class BatchOutcome:
    """Results of a sequential, fail-fast batch."""

    outcomes: list[RunOutcome] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)

    @property
    def exit_code(self) -> ExitCode:
        for outcome in self.outcomes:
            if not outcome.succeeded:
                return outcome.exit_code
        return ExitCode.SUCCESS

    @property
    def usage(self) -> UsageAccumulator:
        total = UsageAccumulator()
        for outcome in self.outcomes:
            total.merge(outcome.usage)
        return total


@dataclass(slots=True)
class _SubtaskExecution:
    exit_code: ExitCode
    updated: Subtask | None
    message: str


@dataclass(slots=True)
class _RunContext:
    """Per-run state threaded through conversion and subtask execution."""

    working_dir: Path
    state_dir: Path
    config_dir: Path
    set_config: SetConfig
    system_prompt_file: Path | None
    usage: UsageAccumulator
    executor_template: str | None = None


class ExecutionEngine:
    """Drives one work item through conversion and sequential subtask execution."""

    def __init__(self, *, store: StateStore, backend: AgentBackend, settings: Settings) -> None:
        self.store = store
        self.backend = backend
        self.settings = settings

    def run(self, request: RunRequest) -> RunOutcome:
        """Convert or resume the work item and execute subtasks until the loop stops.

        Initialization failures raise `StoryloopError`; subtask failures are
        persisted and reported through the returned outcome.
        """

        source_path = request.source_path.absolute()
        working_dir = request.working_dir.absolute()
        usage = UsageAccumulator(context_window=self.settings.agent.context_window)
        loaded = self.store.load(source_path)
        state_dir = loaded.state_dir

        if loaded.outcome is LoadOutcome.INVALID:
            logger.warning("Ignoring unreadable state in %s: %s", state_dir, loaded.reason)

        if loaded.outcome is LoadOutcome.VALID:
            work_item, progress = self._check_resume(request, loaded)
            logger.info(
                "Resuming %s: %s/%s subtasks completed, status %s",
                work_item.display_id,
                len(progress.completed_tasks),
                progress.total_tasks,
                progress.status.value,
            )
            if progress.status is ProgressStatus.COMPLETED:
                return RunOutcome(
                    source_path=source_path,
                    exit_code=ExitCode.SUCCESS,
                    usage=usage,
                    work_item=work_item,
                    progress=progress,
                    state_dir=state_dir,
                    message="Work item already completed",
                )
            context = self._build_context(
                config_dir=(
                    Path(progress.config_path)
                    if progress.config_path
                    else self._config_dir(request)
                ),
                set_name=progress.template_set or self._set_name(request),
                working_dir=working_dir,
                state_dir=state_dir,
                usage=usage,
            )
        else:
            context = self._build_context(
                config_dir=self._config_dir(request),
                set_name=self._set_name(request),
                working_dir=working_dir,
                state_dir=state_dir,
                usage=usage,
            )
            work_item, progress = self._initialize(request, source_path, context)

        if request.dry_run:
            return RunOutcome(
                source_path=source_path,
                exit_code=ExitCode.SUCCESS,
                usage=usage,
                work_item=work_item,
                progress=progress,
                state_dir=state_dir,
                plan=[
                    PlanEntry(
                        position=index + 1,
                        subtask=subtask,
                        done=subtask.id in progress.completed_tasks,
                    )
                    for index, subtask in enumerate(work_item.subtasks)
                ],
            )

        progress.transition(ProgressStatus.RUNNING)
        self.store.save(state_dir, work_item, progress)
        return self._run_loop(source_path, work_item, progress, context)

    def run_batch(self, requests: list[RunRequest]) -> BatchOutcome:
        """Run work items in order, stopping at the first that does not succeed."""

        batch = BatchOutcome()
        for position, request in enumerate(requests):
            try:
                outcome = self.run(request)
            except StoryloopError as error:
                logger.error("Work item %s failed to start: %s", request.source_path, error)
                outcome = RunOutcome(
                    source_path=request.source_path.absolute(),
                    exit_code=error.exit_code,
                    usage=UsageAccumulator(),
                    message=(
                        error.report() if isinstance(error, ConfigurationError) else str(error)
                    ),
                )
            batch.outcomes.append(outcome)
            if not outcome.succeeded:
                batch.skipped = [item.source_path for item in requests[position + 1 :]]
                if batch.skipped:
                    logger.warning("Skipping %s remaining work items", len(batch.skipped))
                break
        return batch

    def status(self, source_path: Path) -> LoadedState:
        """Read persisted state without changing it."""

        return self.store.load(source_path.absolute())

    def _check_resume(
        self,
        request: RunRequest,
        loaded: LoadedState,
    ) -> tuple[WorkItem, ProgressRecord]:
        work_item = loaded.work_item
        progress = loaded.progress
        if work_item is None or progress is None:
            raise ConsistencyError(f"State in {loaded.state_dir} is incomplete")
        requested = request.set_name
        if (
            progress.template_set
            and requested
            and requested != DEFAULT_SET_NAME
            and requested != progress.template_set
        ):
            raise ConsistencyError(
                f"Cannot change template set for existing work item {work_item.display_id}: "
                f"started with {progress.template_set!r}, requested {requested!r}. "
                f"Delete {loaded.state_dir} to start over with a different set.",
            )
        progress.check_against(work_item)
        return work_item, progress

    def _config_dir(self, request: RunRequest) -> Path:
        return request.config_dir or self.settings.config_dir

    def _set_name(self, request: RunRequest) -> str:
        return resolve_set_name(
            self._config_dir(request),
            request.set_name,
            self.settings.default_set,
        )

    def _build_context(  # noqa: PLR0913
        self,
        *,
        config_dir: Path,
        set_name: str,
        working_dir: Path,
        state_dir: Path,
        usage: UsageAccumulator,
    ) -> _RunContext:
        set_config = load_set_config(config_dir, set_name)
        return _RunContext(
            working_dir=working_dir,
            state_dir=state_dir,
            config_dir=config_dir,
            set_config=set_config,
            system_prompt_file=system_prompt_path(config_dir, set_config),
            usage=usage,
        )

    def _initialize(
        self,
        request: RunRequest,
        source_path: Path,
        context: _RunContext,
    ) -> tuple[WorkItem, ProgressRecord]:
        try:
            source_text = source_path.read_text("utf-8")
        except OSError as error:
            raise WorkItemSourceNotFound(
                f"Could not read work item source: {source_path}",
            ) from error
        except UnicodeDecodeError as error:
            raise SchemaError(
                f"Work item source is not valid UTF-8: {source_path}",
                violations=[f"{source_path.name}: {error}"],
            ) from error

        tool_config = self._phase_config(context.set_config, Phase.CONVERSION)
        template = load_template(
            context.config_dir,
            context.set_config.name,
            CONVERTER_TEMPLATE,
        )
        if not request.target_dirs:
            logger.warning("No target directories supplied for %s", source_path.name)

        project_name = project_name_for(source_path)
        prompt = build_prompt(
            template,
            {
                "PRD_CONTENT": source_text,
                "PROJECT_NAME": project_name,
                "WORKING_DIR": str(context.working_dir),
                "PRD_FILENAME": source_path.name,
                "TARGET_DIRS": format_target_dirs(request.target_dirs),
            },
        )
        context.state_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Converting %s with set %s", source_path.name, context.set_config.name)
        result = self._invoke(
            context,
            AgentInvocation(
                prompt=prompt,
                working_dir=context.working_dir,
                tool_config=tool_config,
                mode=Phase.CONVERSION,
                system_prompt_file=context.system_prompt_file,
                task_list_id=make_task_list_id(prd_id_from_filename(source_path) or project_name),
            ),
            task_id=CONVERSION_TASK_ID,
        )

        try:
            payload = self._resolve_payload(result, tool_config)
            work_item = self._materialize(payload, request, source_path, context.working_dir)
        except StoryloopError as error:
            self._record_error(context.state_dir, CONVERSION_TASK_ID, error)
            raise

        progress = ProgressRecord(
            prd_id=work_item.id,
            status=ProgressStatus.INITIALIZED,
            started_at=utc_now_iso(),
            total_tasks=len(work_item.subtasks),
            template_set=context.set_config.name,
            config_path=str(context.config_dir),
        )
        self.store.save(context.state_dir, work_item, progress)
        logger.info(
            "Converted %s into %s subtasks",
            work_item.display_id,
            len(work_item.subtasks),
        )
        return work_item, progress

    def _materialize(
        self,
        payload: dict[str, Any],
        request: RunRequest,
        source_path: Path,
        working_dir: Path,
    ) -> WorkItem:
        document = dict(payload)
        if not document.get("prdId"):
            document["prdId"] = prd_id_from_filename(source_path) or document.get("id")
        if document.get("constraintsValid") is False:
            raw_errors = document.get("constraintErrors") or []
            violations = [str(item) for item in raw_errors] if isinstance(raw_errors, list) else []
            raise SchemaError("Work item violates constraints", violations=violations)
        if not document.get("targetDirs"):
            document["targetDirs"] = [
                target_dir_to_document(entry) for entry in request.target_dirs
            ]
        document["workingDir"] = str(working_dir)

        work_item = work_item_from_document(document)
        checks = validate_paths(work_item, working_dir)
        for warning in checks.warnings:
            logger.warning("Path check: %s", warning)
        if not checks.valid:
            raise SchemaError(
                f"Path validation failed with {len(checks.errors)} errors",
                violations=checks.errors,
            )
        return work_item

    def _run_loop(
        self,
        source_path: Path,
        work_item: WorkItem,
        progress: ProgressRecord,
        context: _RunContext,
    ) -> RunOutcome:
        while True:
            subtask = select_next(work_item.subtasks, progress.completed_tasks)
            if subtask is None:
                return self._finish_idle(source_path, work_item, progress, context)

            index = work_item.index_of(subtask.id)
            logger.info(
                "Executing subtask %s/%s %s: %s",
                index + 1,
                len(work_item.subtasks),
                subtask.id,
                subtask.title,
            )
            progress.current_task = subtask.id
            self.store.save(context.state_dir, work_item, progress)

            execution = self._execute_subtask(work_item, subtask, progress, context)
            if execution.updated is not None:
                work_item.subtasks[index] = execution.updated

            if execution.exit_code == ExitCode.SUCCESS:
                progress.record_completion(subtask.id)
                self.store.save(context.state_dir, work_item, progress)
                continue

            progress.record_failure(subtask.id, execution.message)
            progress.transition(
                ProgressStatus.BLOCKED
                if execution.exit_code == ExitCode.TASK_BLOCKED
                else ProgressStatus.PAUSED,
            )
            self.store.save(context.state_dir, work_item, progress)
            logger.warning("Stopped at subtask %s: %s", subtask.id, execution.message)
            return RunOutcome(
                source_path=source_path,
                exit_code=execution.exit_code,
                usage=context.usage,
                work_item=work_item,
                progress=progress,
                state_dir=context.state_dir,
                stopped_at=subtask.id,
                message=execution.message,
            )

    def _finish_idle(
        self,
        source_path: Path,
        work_item: WorkItem,
        progress: ProgressRecord,
        context: _RunContext,
    ) -> RunOutcome:
        if classify_idle(work_item.subtasks, progress.completed_tasks) is GraphState.DONE:
            progress.transition(ProgressStatus.COMPLETED)
            progress.current_task = None
            progress.completed_at = utc_now_iso()
            progress.summary = (
                f"All {progress.total_tasks} tasks completed. "
                f"{len(work_item.all_commits())} commits across "
                f"{len(work_item.target_dirs)} repos."
            )
            self.store.save(context.state_dir, work_item, progress)
            logger.info("Work item %s completed", work_item.display_id)
            return RunOutcome(
                source_path=source_path,
                exit_code=ExitCode.SUCCESS,
                usage=context.usage,
                work_item=work_item,
                progress=progress,
                state_dir=context.state_dir,
                message=progress.summary,
            )

        missing = unsatisfied_dependencies(work_item.subtasks, progress.completed_tasks)
        waiting = [
            f"{task_id} waits for {', '.join(deps)}" if deps else f"{task_id} is not eligible"
            for task_id, deps in missing.items()
        ]
        error = DependencyUnsatisfiable(
            f"No executable subtasks remain: {'; '.join(waiting)}",
        )
        stuck_id = next(iter(missing))
        self._record_error(context.state_dir, stuck_id, error, details={"unsatisfied": missing})
        progress.record_failure(stuck_id, str(error))
        progress.transition(ProgressStatus.BLOCKED)
        self.store.save(context.state_dir, work_item, progress)
        logger.warning("%s", error)
        return RunOutcome(
            source_path=source_path,
            exit_code=error.exit_code,
            usage=context.usage,
            work_item=work_item,
            progress=progress,
            state_dir=context.state_dir,
            stopped_at=stuck_id,
            message=str(error),
        )

    def _execute_subtask(
        self,
        work_item: WorkItem,
        subtask: Subtask,
        progress: ProgressRecord,
        context: _RunContext,
    ) -> _SubtaskExecution:
        tool_config = self._phase_config(context.set_config, Phase.TASK)
        if context.executor_template is None:
            context.executor_template = load_template(
                context.config_dir,
                context.set_config.name,
                EXECUTOR_TEMPLATE,
            )
        prompt = build_prompt(
            context.executor_template,
            self._task_replacements(work_item, subtask, progress, context, tool_config),
        )
        result = self._invoke(
            context,
            AgentInvocation(
                prompt=prompt,
                working_dir=context.working_dir,
                tool_config=tool_config,
                mode=Phase.TASK,
                system_prompt_file=context.system_prompt_file,
                task_list_id=make_task_list_id(work_item.display_id, subtask.id),
            ),
            task_id=subtask.id,
        )

        try:
            payload = self._resolve_payload(result, tool_config)
            updated = merge_subtask_result(subtask, payload, work_item.index_of(subtask.id))
        except StoryloopError as error:
            self._record_error(context.state_dir, subtask.id, error)
            return _SubtaskExecution(exit_code=error.exit_code, updated=None, message=str(error))

        security = payload.get("securityCheck")
        if security is not None and not (isinstance(security, dict) and security.get("passed")):
            issues = security.get("issues") if isinstance(security, dict) else None
            violation = SecurityPolicyViolation(
                f"Security check failed for {subtask.id}",
                issues=issues if isinstance(issues, list) else [],
            )
            self._record_error(context.state_dir, subtask.id, violation)
            updated.status = SubtaskStatus.FAILED
            updated.passes = False
            return _SubtaskExecution(
                exit_code=violation.exit_code,
                updated=updated,
                message=updated.notes or str(violation),
            )

        if updated.passes:
            updated.status = SubtaskStatus.COMPLETED
            logger.info(
                "Subtask %s passed with %s commits",
                subtask.id,
                len(updated.commits),
            )
            return _SubtaskExecution(exit_code=ExitCode.SUCCESS, updated=updated, message="")
        if updated.status is SubtaskStatus.BLOCKED:
            return _SubtaskExecution(
                exit_code=ExitCode.TASK_BLOCKED,
                updated=updated,
                message=updated.notes or "Task blocked",
            )
        return _SubtaskExecution(
            exit_code=ExitCode.TASK_FAILED,
            updated=updated,
            message=updated.notes or "Task failed",
        )

    def _task_replacements(  # noqa: PLR0913
        self,
        work_item: WorkItem,
        subtask: Subtask,
        progress: ProgressRecord,
        context: _RunContext,
        tool_config: ToolConfig,
    ) -> dict[str, str]:
        completed = (
            TASK_CONTEXT_DISABLED
            if tool_config.skip_context
            else format_completed_tasks(work_item.subtasks, progress.completed_tasks)
        )
        return {
            "PRD_ID": work_item.display_id,
            "PROJECT_NAME": work_item.title,
            "BRANCH_NAME": work_item.branch_name,
            "WORKING_DIR": str(context.working_dir),
            "STATE_DIR": str(context.state_dir),
            "TARGET_DIRS": format_target_dirs(work_item.target_dirs),
            "COMPLETED_TASKS": completed,
            "CURRENT_TASK": format_current_task(subtask),
            "TASK_ID": subtask.id,
            "AFFECTED_REPOS": format_affected_repos(subtask.affected_repos, work_item.target_dirs),
            "CODE_CONTEXT": format_code_context(subtask.extra.get("codeContext")),
            "CONSTRAINTS": format_constraints(subtask.extra.get("constraints")),
            "PATTERN_EXAMPLE": str(subtask.extra.get("patternExample") or "None provided."),
        }

    def _invoke(
        self,
        context: _RunContext,
        invocation: AgentInvocation,
        *,
        task_id: str,
    ) -> AgentInvocationResult:
        result = self.backend.invoke(invocation)
        context.usage.add(result.usage)
        self.store.append_task_log(
            context.state_dir,
            task_id=task_id,
            phase=invocation.mode,
            output=result.raw_output,
            usage=result.usage,
            error=str(result.transport_error) if result.transport_error is not None else None,
            context_management=result.context_signal,
        )
        return result

    def _resolve_payload(
        self,
        result: AgentInvocationResult,
        tool_config: ToolConfig,
    ) -> dict[str, Any]:
        """Pick the structured result of an invocation or raise the matching error.

        A structured result captured before a nonzero exit is still used; that
        exception covers transport errors only.
        """

        if result.context_signal:
            raise ContextCompactedError(CONTEXT_COMPACTED_MESSAGE)

        transport_error = result.transport_error
        if result.structured_result is not None:
            if transport_error is not None:
                logger.warning(
                    "Using structured result despite transport error: %s",
                    transport_error,
                )
            payload = result.structured_result
        elif transport_error is not None:
            classification = classify_transport_failure(
                tool=tool_config.tool,
                returncode=transport_error.returncode,
                stdout=result.raw_output,
                stderr=transport_error.stderr or result.stderr,
            )
            transport_error.exit_code = classification.exit_code
            transport_error.details.update(classification.to_details(tool=tool_config.tool))
            raise transport_error
        else:
            payload = extract_structured_result(result.raw_output)

        missing = [key for key in tool_config.required_keys if key not in payload]
        if missing:
            raise SchemaError(
                f"Agent result is missing required fields: {', '.join(missing)}",
                violations=[f'result: Missing required key "{key}"' for key in missing],
            )
        return payload

    def _phase_config(self, set_config: SetConfig, phase: Phase) -> ToolConfig:
        tool_config = set_config.tool_config(phase)
        if tool_config is None:
            raise ConfigurationError(f"Set {set_config.name} has no {phase.value} tool config")
        return tool_config

    def _record_error(
        self,
        state_dir: Path,
        task_id: str,
        error: StoryloopError,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged: dict[str, Any] = {"exitCode": int(error.exit_code)}
        if isinstance(error, TransportError):
            merged.update(error.details)
            merged["returncode"] = error.returncode
        if isinstance(error, SchemaError) and error.violations:
            merged["violations"] = error.violations
        if isinstance(error, SecurityPolicyViolation):
            merged["issues"] = error.issues
        merged.update(details or {})
        self.store.append_error(
            state_dir,
            task_id=task_id,
            error_type=type(error).__name__,
            message=str(error),
            details=merged,
        )
