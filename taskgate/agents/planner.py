"""
The Planner — turns a goal into a task list.

Builds the task-generation prompt, parses the first JSON array out of
the model's answer, and knows the deterministic fallback plan used when
the backend fails or talks nonsense. Never executes anything.
"""

from __future__ import annotations

import json
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from taskgate.agents import BaseAgent, PlanningContext
from taskgate.router import RouterResponse
from taskgate.state import TASK_TYPES, Task, TaskType


class TaskParseError(ValueError):
    """The backend answer did not contain a usable task array."""
    pass


# ---------------------------------------------------------------------------
# Strict Output Schema
# ---------------------------------------------------------------------------

class RawTask(BaseModel):
    """One task exactly as the model is asked to emit it."""
    model_config = ConfigDict(populate_by_name=True)

    type: TaskType = "analysis"
    title: str | None = None
    description: str = ""
    target: str = "."
    priority: int = 5
    user_approval_required: bool = Field(default=True, alias="userApprovalRequired")
    estimated_duration: int = Field(default=60, alias="estimatedDuration")
    dependencies: list[int | str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _strip_fences(text: str) -> str:
    if "```" not in text:
        return text
    lines = [l for l in text.split("\n") if not l.strip().startswith("```")]
    return "\n".join(lines)


def extract_task_array(text: str) -> list[Any]:
    """Return the first well-formed JSON array literal in `text`.

    Raises:
        TaskParseError: The payload is JSON but not an array, or no array
            literal parses anywhere in the text.
    """
    content = _strip_fences(text).strip()

    try:
        whole = json.loads(content)
    except json.JSONDecodeError:
        whole = None
    else:
        if not isinstance(whole, list):
            raise TaskParseError(f"Response is not an array (got {type(whole).__name__})")
        return whole

    decoder = json.JSONDecoder()
    start = content.find("[")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(content, start)
        except json.JSONDecodeError:
            start = content.find("[", start + 1)
            continue
        return value

    raise TaskParseError("No JSON array found in response")


def _remap_dependencies(raw: list[int | str], index: int, ids: list[str]) -> list[str]:
    """Positional indices into the generated list → real task ids."""
    resolved: list[str] = []
    for dep in raw:
        try:
            position = int(dep)
        except (TypeError, ValueError):
            logger.debug(f"[PLANNER] Dropping non-index dependency {dep!r} on task {index}")
            continue
        if position == index or not 0 <= position < len(ids):
            logger.debug(f"[PLANNER] Dropping invalid dependency index {position} on task {index}")
            continue
        if ids[position] not in resolved:
            resolved.append(ids[position])
    return resolved


def materialize_tasks(items: list[Any]) -> list[Task]:
    """Validate raw task dicts and give every task a fresh id."""
    if not items:
        raise TaskParseError("Task array is empty")

    try:
        raw_tasks = [RawTask.model_validate(item) for item in items]
    except ValidationError as e:
        raise TaskParseError(f"Task validation failed: {e}") from e

    tasks = [
        Task(
            type=raw.type,
            title=raw.title or f"Task {i + 1}",
            description=raw.description,
            target=raw.target or ".",
            priority=raw.priority,
            user_approval_required=raw.user_approval_required,
            estimated_duration=raw.estimated_duration,
        )
        for i, raw in enumerate(raw_tasks)
    ]

    ids = [t.id for t in tasks]
    for i, (raw, task) in enumerate(zip(raw_tasks, tasks)):
        task.dependencies = _remap_dependencies(raw.dependencies, i, ids)

    return tasks


# ---------------------------------------------------------------------------
# Fallback plan
# ---------------------------------------------------------------------------

def _tooling_command(context: PlanningContext) -> str:
    manifests = context.extra.get("manifests", [])
    if "package.json" in manifests or not manifests:
        return "npm install"
    if "pyproject.toml" in manifests:
        return "pip install -e ."
    return "npm install"


def fallback_tasks(context: PlanningContext) -> list[Task]:
    """Deterministic plan keyed by scope. Never empty."""
    target = context.target_path

    if context.scope == "file" and target:
        return [Task(
            type="file_conversion",
            title=f"Apply changes to {target}",
            description=f"Work toward the goal in this file: {context.goal}",
            target=target,
            priority=10,
            user_approval_required=True,
            estimated_duration=120,
        )]

    if context.scope == "folder" and target:
        survey = Task(
            type="analysis",
            title="Analyze folder",
            description=f"Survey every file in the folder for: {context.goal}",
            target=target,
            priority=9,
            user_approval_required=False,
            estimated_duration=60,
        )
        convert = Task(
            type="module_conversion",
            title="Convert folder",
            description=f"Apply the changes found by the survey: {context.goal}",
            target=target,
            priority=8,
            dependencies=[survey.id],
            user_approval_required=True,
            estimated_duration=300,
        )
        return [survey, convert]

    # Repository scope, or a file/folder scope with nothing to point at
    return [
        Task(
            type="analysis",
            title="Repository audit",
            description=f"Audit the repository for: {context.goal}",
            target=".",
            priority=10,
            user_approval_required=False,
            estimated_duration=90,
        ),
        Task(
            type="terminal_command",
            title="Install project tooling",
            description=_tooling_command(context),
            target=".",
            priority=8,
            user_approval_required=True,
            estimated_duration=120,
        ),
    ]


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class PlannerAgent(BaseAgent):
    role = "planner"

    system_prompt = """You are the planning engine inside TASKGATE.

Your job is to take a development goal and produce a short, specific,
actionable task list for an agent that can edit files, edit modules,
run shell commands and analyse code.

You MUST respond with a JSON array ONLY. No commentary.

Rules:
- Every task is specific and actionable.
- Shell commands go in the description of a terminal_command task, one command,
  no pipes, no chaining, no substitutions.
- Dependencies are zero-based indices into the array you return.
- Never depend on a later task in a way that forms a cycle.
"""

    def build_messages(self, context: PlanningContext) -> list[dict[str, str]]:
        lines = [
            f'Create a task plan to achieve this goal: "{context.goal}"',
            "",
            "CONTEXT:",
            f"- Scope: {context.scope}",
            f"- Target: {context.target_path or 'auto-detect'}",
            f"- Project Type: {context.project_type or 'Unknown'}",
        ]
        if context.file_extension:
            lines.append(f"- File Type: {context.file_extension}")
        if context.folder_contents:
            entries = ", ".join(f"{e['name']} ({e['type']})" for e in context.folder_contents[:50])
            lines.append(f"- Folder Contents: {entries}")
        if context.file_content:
            lines.append(f"\n--- {context.target_path} ---\n{context.file_content[:4000]}\n")

        lines += [
            "",
            "CONSTRAINTS:",
            f"- Maximum {context.ai_calls_limit} AI calls total (including this one)",
            f"- Task types: {', '.join(TASK_TYPES)}",
            "- Consider dependencies between tasks",
            "",
            "RESPONSE FORMAT:",
            "A JSON array. Each task:",
            '{"type": "file_conversion|module_conversion|terminal_command|analysis", '
            '"title": "...", "description": "details or the command", "target": "path", '
            '"priority": 1-10, "userApprovalRequired": true, "estimatedDuration": 60, '
            '"dependencies": [0]}',
            "",
            "EXAMPLE:",
            json.dumps([
                {"type": "analysis", "title": "Scan source tree", "description": "Find affected components",
                 "target": "src/", "priority": 10, "userApprovalRequired": False,
                 "estimatedDuration": 30, "dependencies": []},
                {"type": "file_conversion", "title": "Update navigation component",
                 "description": "Apply the changes found by the scan", "target": "src/Navigation.jsx",
                 "priority": 9, "userApprovalRequired": True, "estimatedDuration": 120,
                 "dependencies": [0]},
            ], indent=2),
            "",
            f'Generate tasks for the goal: "{context.goal}"',
        ]
        return [self._system_msg(), self._user_msg("\n".join(lines))]

    def parse_response(self, response: RouterResponse, context: PlanningContext) -> list[Task]:
        tasks = materialize_tasks(extract_task_array(response.content))
        logger.info(f"[PLANNER] Parsed {len(tasks)} tasks from {response.model}")
        return tasks
