"""
TASKGATE State — the records that flow through the control plane.

A Plan owns its Tasks. Decisions and TerminalCommands point back at
a task id but never own it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

TaskType = Literal["file_conversion", "module_conversion", "terminal_command", "analysis"]
TaskStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
PlanStatus = Literal["planning", "executing", "completed", "failed"]
Scope = Literal["file", "folder", "repository"]
DecisionType = Literal["file_changes", "module_changes", "terminal_command", "generic"]
RiskLevel = Literal["low", "medium", "high"]

TASK_TYPES: tuple[str, ...] = ("file_conversion", "module_conversion", "terminal_command", "analysis")
SCOPES: tuple[str, ...] = ("file", "folder", "repository")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Tasks & Plans
# ---------------------------------------------------------------------------

class Task(BaseModel):
    """One unit of planned work."""
    id: str = Field(default_factory=lambda: new_id("task"))
    type: TaskType = "analysis"
    title: str
    description: str = ""
    target: str = "."
    status: TaskStatus = "pending"
    priority: int = 5
    dependencies: list[str] = Field(default_factory=list)
    user_approval_required: bool = True
    estimated_duration: int = 60  # seconds, advisory
    result: Any = None
    error: str | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def clamp_priority(cls, value: Any) -> int:
        try:
            value = int(value)
        except (TypeError, ValueError):
            return 5
        return max(1, min(10, value))


class Plan(BaseModel):
    """An ordered collection of Tasks pursuing one goal."""
    id: str = Field(default_factory=lambda: new_id("plan"))
    goal: str
    scope: Scope = "repository"
    target: str | None = None
    tasks: list[Task] = Field(default_factory=list)
    total_tasks: int = 0
    completed_tasks: int = 0
    status: PlanStatus = "planning"
    ai_calls_used: int = 0
    ai_calls_limit: int = 5
    context: dict[str, Any] = Field(default_factory=dict, exclude=True)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def get_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def summary(self) -> dict[str, Any]:
        duration = 0
        if self.started_at and self.finished_at:
            duration = round((self.finished_at - self.started_at).total_seconds())
        return {
            "goal": self.goal,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": sum(1 for t in self.tasks if t.status == "failed"),
            "skipped_tasks": sum(1 for t in self.tasks if t.status == "skipped"),
            "duration": duration,
            "ai_calls_used": self.ai_calls_used,
            "ai_calls_limit": self.ai_calls_limit,
            "status": self.status,
        }


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

class Decision(BaseModel):
    """A pending approval request tied to a task or command."""
    id: str = Field(default_factory=lambda: new_id("decision"))
    task_id: str
    type: DecisionType = "generic"
    description: str = ""
    target: str = ""
    changes: Any = None
    timestamp: datetime = Field(default_factory=_utcnow)
    user_response: Literal["approved", "rejected"] | None = None


class ApprovalPresentation(BaseModel):
    """What the approval UI renders for a decision."""
    title: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Terminal commands
# ---------------------------------------------------------------------------

class CommandResult(BaseModel):
    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int = 0


class TerminalCommand(BaseModel):
    id: str = Field(default_factory=lambda: new_id("cmd"))
    command: str
    working_directory: str = ""
    description: str = ""
    risk_level: RiskLevel = "medium"
    user_approval_required: bool = True
    executed: bool = False
    result: CommandResult | None = None
