"""Work-item orchestration for CLI coding agents.

A feature request document is converted once into a work item with
dependency-ordered subtasks, then each subtask is handed to the agent in
turn. All run state lives in JSON documents next to the source document:

- `prd.json` holds the converted work item and per-subtask results.
- `progress.json` holds the run lifecycle status and completed subtask ids.
- `task.log` and `error.log` keep one entry per agent invocation or failure.

A run that stops on a failed or blocked subtask can be started again with
the same source document and resumes after the last completed subtask.
"""
