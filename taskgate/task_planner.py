"""
TASKGATE Task Planner — goal in, ordered Plan out.

  1. analyze_context()       what is the target? (failures become fields)
  2. PlannerAgent            one backend call for the task list
  3. fallback_tasks()        when the backend fails or answers garbage
  4. resolve_dependencies()  depth-first order, fail fast on cycles

A missing workspace root and a circular dependency are the only
failures that stop planning.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loguru import logger

from taskgate.agents import ChatBackend, PlanningContext
from taskgate.agents.planner import PlannerAgent, TaskParseError, fallback_tasks
from taskgate.event_bus import EventBus, EventType
from taskgate.router import BackendError
from taskgate.state import SCOPES, Plan, Task

MANIFESTS = ("package.json", "pyproject.toml")

# Checked in order over dependencies + devDependencies
PROJECT_MARKERS: list[tuple[str, tuple[str, ...]]] = [
    ("React", ("react", "@types/react")),
    ("Angular", ("angular", "@angular/core")),
    ("Vue", ("vue", "@vue/cli")),
    ("Svelte", ("svelte",)),
    ("Next.js", ("next",)),
    ("Nuxt.js", ("nuxt",)),
    ("Express", ("express",)),
]


class WorkspaceNotFoundError(Exception):
    """No workspace root, so no plan is possible."""
    pass


class CircularDependencyError(ValueError):
    def __init__(self, task_id: str):
        super().__init__(f"Circular dependency detected involving task {task_id}")
        self.task_id = task_id


def detect_project_type(manifest: dict[str, Any]) -> str:
    """Raises ValueError when the manifest is not an object of dependency maps."""
    if not isinstance(manifest, dict):
        raise ValueError(f"expected an object, got {type(manifest).__name__}")

    dependencies: dict[str, Any] = {}
    for section in ("dependencies", "devDependencies"):
        entries = manifest.get(section) or {}
        if not isinstance(entries, dict):
            raise ValueError(f"\"{section}\" must be an object, got {type(entries).__name__}")
        dependencies.update(entries)
    for project_type, markers in PROJECT_MARKERS:
        if any(marker in dependencies for marker in markers):
            return project_type
    return "Unknown"


def resolve_dependencies(tasks: list[Task]) -> list[Task]:
    """Order tasks so each one follows all of its dependencies.

    Depth-first: a task's dependencies are emitted before the task.
    Unknown dependency ids are ignored.

    Raises:
        CircularDependencyError: naming a task on the cycle. No partial
            ordering is returned.
    """
    by_id = {task.id: task for task in tasks}
    resolved: list[Task] = []
    done: set[str] = set()
    resolving: set[str] = set()

    def visit(task_id: str) -> None:
        if task_id in done:
            return
        if task_id in resolving:
            raise CircularDependencyError(task_id)
        task = by_id.get(task_id)
        if task is None:
            return

        resolving.add(task_id)
        for dep_id in task.dependencies:
            visit(dep_id)
        resolving.discard(task_id)

        done.add(task_id)
        resolved.append(task)

    for task in tasks:
        visit(task.id)

    return resolved


class TaskPlanner:
    def __init__(
        self,
        backend: ChatBackend,
        workspace_root: Path | str | None,
        ai_calls_limit: int = 5,
        bus: EventBus | None = None,
    ):
        self.agent = PlannerAgent(backend)
        self.workspace_root = Path(workspace_root).resolve() if workspace_root else None
        self.ai_calls_limit = ai_calls_limit
        self.bus = bus

    async def create_plan(self, goal: str, scope: str, target_path: str | None = None) -> Plan:
        """Build a dependency-ordered Plan for `goal`.

        Raises:
            WorkspaceNotFoundError: no workspace root is configured or it is gone.
            CircularDependencyError: the generated tasks form a cycle.
            ValueError: unknown scope.
        """
        if scope not in SCOPES:
            raise ValueError(f"Unknown scope: {scope}. Known: {list(SCOPES)}")

        context = self.analyze_context(goal, scope, target_path)
        tasks, used_fallback = await self.generate_tasks(context)
        ordered = resolve_dependencies(tasks)

        plan = Plan(
            goal=goal,
            scope=scope,
            target=target_path,
            tasks=ordered,
            total_tasks=len(ordered),
            ai_calls_used=1,
            ai_calls_limit=self.ai_calls_limit,
            context=context.model_dump(),
        )

        logger.info(
            f"[PLANNER] Plan {plan.id} ready — {plan.total_tasks} tasks"
            f"{' (fallback)' if used_fallback else ''}"
        )
        self._emit(EventType.PLAN_CREATED, {
            "plan_id": plan.id,
            "goal": goal,
            "scope": scope,
            "tasks": plan.total_tasks,
            "fallback": used_fallback,
        })
        return plan

    def analyze_context(self, goal: str, scope: str, target_path: str | None = None) -> PlanningContext:
        """Gather what the prompt needs. Read failures are recorded, not raised."""
        if self.workspace_root is None or not self.workspace_root.is_dir():
            raise WorkspaceNotFoundError(f"No workspace folder found: {self.workspace_root}")

        context = PlanningContext(
            goal=goal,
            scope=scope,
            workspace_root=str(self.workspace_root),
            target_path=target_path,
            ai_calls_limit=self.ai_calls_limit,
        )

        if scope == "file" and target_path:
            path = self._resolve(target_path)
            try:
                context.file_content = path.read_text(encoding="utf-8")
                context.file_extension = path.suffix.lstrip(".") or None
            except (OSError, UnicodeDecodeError) as e:
                context.extra["error"] = f"Cannot read file: {e}"

        elif scope == "folder" and target_path:
            path = self._resolve(target_path)
            try:
                context.folder_contents = [
                    {"name": entry.name, "type": "directory" if entry.is_dir() else "file"}
                    for entry in sorted(path.iterdir())
                ]
            except OSError as e:
                context.extra["error"] = f"Cannot read folder: {e}"

        elif scope == "repository":
            context.extra["manifests"] = [m for m in MANIFESTS if (self.workspace_root / m).exists()]
            manifest_path = self.workspace_root / "package.json"
            try:
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
                context.project_type = detect_project_type(manifest)
                context.extra["manifest"] = manifest
            except FileNotFoundError:
                context.extra["manifest_error"] = "No package.json found"
            except (OSError, ValueError, AttributeError, TypeError) as e:
                context.extra["manifest_error"] = f"Cannot read package.json: {e}"

        if "error" in context.extra or "manifest_error" in context.extra:
            logger.debug(f"[PLANNER] Context degraded: {context.extra.get('error') or context.extra.get('manifest_error')}")

        return context

    async def generate_tasks(self, context: PlanningContext) -> tuple[list[Task], bool]:
        """One backend call. Returns (tasks, used_fallback)."""
        try:
            tasks = await self.agent.run(context)
            return tasks, False
        except (BackendError, TaskParseError) as e:
            reason = str(e)
        except Exception as e:
            # Foreign backends raise their own types; they degrade the same way
            logger.opt(exception=e).debug("[PLANNER] Backend raised unexpectedly")
            reason = f"{type(e).__name__}: {e}"

        logger.warning(f"[PLANNER] Falling back to default tasks: {reason}")
        self._emit(EventType.PLANNER_FALLBACK, {"reason": reason})
        return fallback_tasks(context), True

    def _resolve(self, target_path: str) -> Path:
        path = Path(target_path)
        return path if path.is_absolute() else self.workspace_root / path

    def _emit(self, event_type: EventType, payload: dict) -> None:
        if self.bus:
            self.bus.emit(event_type, "planner", payload)
