"""
TASKGATE Controller — The Driver

It is NOT smart. It is deterministic.

Responsibilities:
  - Wire one session's engines together (explicit instances, no globals)
  - Ask the planner for an ordered Plan
  - Route every task through its gate:
        file/module   → approval → optional file editor → change approval
        terminal      → validate → risk → approval → execute
        analysis      → AI-call budget → backend
  - Apply the failure policy: dependents of a failed or skipped task are
    skipped, independent tasks continue (or halt everything when
    stop_on_failure is set)
  - Tear the session down so nothing is left waiting

It never writes files. It only coordinates.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from taskgate.agents import ChatBackend
from taskgate.audit_logger import ExecutionLog
from taskgate.config_loader import TaskGateConfig, load_config
from taskgate.decisions import (
    ApprovalCancelledError,
    ApprovalTimeoutError,
    ApprovalUI,
    AutoApproveUI,
    ConsoleApprovalUI,
    DecisionManager,
)
from taskgate.event_bus import EventBus, EventType
from taskgate.file_tracker import FileContextTracker
from taskgate.rate_limiter import RateLimitExceeded, RateLimiter
from taskgate.router import AICallLimitExceeded, BackendError, Router
from taskgate.state import Decision, Plan, Task
from taskgate.task_planner import TaskPlanner
from taskgate.terminal import CommandRejectedError, TerminalExecutor

console = Console()

# File tasks needing approval before one bulk question is asked instead
BULK_APPROVAL_MIN_TASKS = 2


class TaskExecutionError(Exception):
    """A task ran and failed. The plan's failure policy decides what happens next."""
    pass


class FileEditor(Protocol):
    async def convert(self, task: Task) -> dict[str, Any] | None:
        """Prepare (not apply) the changes for a file/module task."""
        ...


class Controller:
    """
    One agent session over one workspace.

    Pipeline: Plan → (bulk approval) → per task: gate → execute → bookkeeping
    """

    def __init__(
        self,
        repo_path: Path,
        config: TaskGateConfig | None = None,
        auto_approve: bool = False,
        ui: ApprovalUI | None = None,
        backend: ChatBackend | None = None,
        file_editor: FileEditor | None = None,
        bus: EventBus | None = None,
    ):
        self.repo_path = repo_path.resolve()
        self.config = config or load_config(self.repo_path)
        self.file_editor = file_editor

        # Session plumbing
        self.bus = bus or EventBus()
        self.execution_log = ExecutionLog(self.repo_path / self.config.logging.execution_log, self.bus)

        # Engines
        self.rate_limiter = RateLimiter(self.config.rate_limit, bus=self.bus)
        self.backend = backend or Router(self.config, self.rate_limiter)
        self.file_tracker = FileContextTracker(self.repo_path, self.config.file_tracker, bus=self.bus)
        self.terminal = TerminalExecutor(self.repo_path, self.config.terminal, bus=self.bus)
        self.decisions = DecisionManager(
            ui=ui or (AutoApproveUI() if auto_approve else ConsoleApprovalUI(console)),
            timeout=self.config.approvals.timeout_seconds,
            trusted_commands=self.config.approvals.trusted_commands,
            bus=self.bus,
        )
        self.planner = TaskPlanner(
            self.backend,
            self.repo_path,
            ai_calls_limit=self.config.limits.ai_calls_limit,
            bus=self.bus,
        )

        self._preapproved: dict[str, bool] = {}

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    async def run(self, goal: str, scope: str, target_path: str | None = None) -> Plan:
        """Plan and execute `goal`."""
        console.print(Panel(
            f"[bold green]Goal:[/] {escape(goal[:120])}\n"
            f"[bold]Scope:[/] {scope}  |  [bold]Target:[/] {escape(target_path or 'auto-detect')}",
            title="⚡ TASKGATE",
            border_style="bright_green",
        ))

        console.print("\n[bold magenta]🧠 Planning...[/]")
        plan = await self.planner.create_plan(goal, scope, target_path)
        self._print_plan(plan)

        await self.execute_plan(plan)
        self._print_summary(plan)
        return plan

    async def execute_plan(self, plan: Plan) -> Plan:
        """Run every task in plan order under the failure policy.

        Every task ends completed, failed or skipped, and the plan is
        always finished, even when an unexpected error escapes a task.
        """
        plan.status = "executing"
        plan.started_at = datetime.now(timezone.utc)
        self._emit(EventType.PLAN_STARTED, {"plan_id": plan.id, "tasks": plan.total_tasks})

        unsuccessful: set[str] = set()
        halted_reason: str | None = None

        try:
            try:
                self._preapproved = await self._collect_bulk_approvals(plan)
            except ApprovalCancelledError:
                self._preapproved = {}
                halted_reason = "Plan halted: approvals were cancelled"

            for i, task in enumerate(plan.tasks, start=1):
                if halted_reason:
                    self._skip(task, halted_reason)
                    unsuccessful.add(task.id)
                    continue

                blocker = next((dep for dep in task.dependencies if dep in unsuccessful), None)
                if blocker:
                    self._skip(task, f"Dependency {blocker} did not complete")
                    unsuccessful.add(task.id)
                    continue

                console.print(f"\n[bold]🔧 Task {i}/{plan.total_tasks}:[/] {escape(task.title)}")
                task.status = "in_progress"
                self._emit(EventType.TASK_STARTED, {"plan_id": plan.id, "task_id": task.id, "type": task.type})

                try:
                    await self.execute_task(plan, task)
                except ApprovalCancelledError as e:
                    self._fail(task, str(e))
                    halted_reason = "Plan halted: approvals were cancelled"
                except (
                    ApprovalTimeoutError,
                    CommandRejectedError,
                    TaskExecutionError,
                    BackendError,
                    RateLimitExceeded,
                ) as e:
                    self._fail(task, str(e))
                except Exception as e:
                    logger.opt(exception=e).error(f"[CONTROLLER] Task {task.id} raised unexpectedly")
                    self._fail(task, f"{type(e).__name__}: {e}")
                else:
                    if task.status == "in_progress":
                        task.status = "completed"
                        plan.completed_tasks += 1
                        console.print(f"  [green]✅ {escape(task.title)}[/]")
                        self._emit(EventType.TASK_COMPLETED, {"plan_id": plan.id, "task_id": task.id})

                if task.status == "failed" and self.config.limits.stop_on_failure and not halted_reason:
                    halted_reason = f"Plan halted after {task.id} failed"
                if task.status in ("failed", "skipped"):
                    unsuccessful.add(task.id)
        finally:
            for task in plan.tasks:
                if task.status in ("pending", "in_progress"):
                    self._skip(task, "Plan interrupted")
            plan.status = "completed" if plan.completed_tasks == plan.total_tasks else "failed"
            plan.finished_at = datetime.now(timezone.utc)
            self._emit(EventType.PLAN_FINISHED, plan.summary())
            logger.info(f"[CONTROLLER] Plan {plan.id} {plan.status}: {plan.completed_tasks}/{plan.total_tasks}")
        return plan

    async def execute_task(self, plan: Plan, task: Task) -> None:
        if task.type == "file_conversion":
            await self._execute_file_change(task, module=False)
        elif task.type == "module_conversion":
            await self._execute_file_change(task, module=True)
        elif task.type == "terminal_command":
            await self._execute_terminal_command(task)
        elif task.type == "analysis":
            await self._execute_analysis(plan, task)
        else:
            raise TaskExecutionError(f"Unknown task type: {task.type}")

    async def shutdown(self) -> None:
        """Release everything that might still be waiting."""
        self.decisions.cancel_all_pending_decisions()
        self.rate_limiter.dispose()
        self.file_tracker.dispose()
        self.execution_log.close()

    # -----------------------------------------------------------------------
    # Read tool support
    # -----------------------------------------------------------------------

    def read_file(self, path: str, limit: int | None = None, offset: int | None = None) -> str:
        """Read through the context tracker. Missing files raise as usual."""
        verdict = self.file_tracker.should_read_file(path, limit, offset)
        if not verdict.should_read and verdict.cached_content is not None:
            return verdict.cached_content

        full = Path(path) if Path(path).is_absolute() else self.repo_path / path
        text = full.read_text(encoding="utf-8")
        if limit or offset:
            start = offset or 0
            lines = text.splitlines(keepends=True)
            text = "".join(lines[start:start + limit] if limit else lines[start:])

        self.file_tracker.cache_file_content(path, text, limit, offset)
        return text

    # -----------------------------------------------------------------------
    # Task handlers
    # -----------------------------------------------------------------------

    async def _execute_file_change(self, task: Task, module: bool) -> None:
        if task.user_approval_required:
            if task.id in self._preapproved:
                approved = self._preapproved[task.id]
            elif module:
                approved = await self.decisions.request_module_change_approval(task)
            else:
                approved = await self.decisions.request_file_change_approval(task)
            if not approved:
                self._skip(task, "Rejected by user")
                return

        if self.file_editor is None:
            logger.info(f"[CONTROLLER] {task.target} approved; no file editor attached")
            task.result = {"approved": True, "applied": False}
            return

        changes = await self.file_editor.convert(task)
        if not changes:
            raise TaskExecutionError(f"No changes produced for {task.target}")

        accepted = await self.decisions.request_change_approval(Decision(
            task_id=task.id,
            type="module_changes" if module else "file_changes",
            description=f"Apply prepared changes to {task.target}",
            target=task.target,
            changes=changes,
        ))
        if not accepted:
            self._skip(task, "Changes rejected by user")
            return

        task.result = changes

    async def _execute_terminal_command(self, task: Task) -> None:
        target = self.repo_path / task.target
        command = self.terminal.create_safe_command(
            task.description,
            working_directory=target if target.is_dir() else self.repo_path,
        )

        verdict = self.terminal.validate_command(command.command)
        if not verdict.valid:
            raise CommandRejectedError(command.command, verdict.reason or "invalid command")

        console.print(f"  [dim]$ {escape(command.command)}[/]  ({command.risk_level} risk)")

        if command.user_approval_required and not self.decisions.is_quick_approvable(command):
            approved = await self.decisions.request_terminal_command_approval(command, task_id=task.id)
            if not approved:
                self._skip(task, "Command rejected by user")
                return

        result = await self.terminal.execute_command(command)
        task.result = result.model_dump()
        if not result.success:
            raise TaskExecutionError(f"Command failed: {result.error}")

    async def _execute_analysis(self, plan: Plan, task: Task) -> None:
        if plan.ai_calls_used >= plan.ai_calls_limit:
            raise AICallLimitExceeded(
                f"AI calls limit reached ({plan.ai_calls_used}/{plan.ai_calls_limit})"
            )
        plan.ai_calls_used += 1

        prompt = (
            f'Goal: "{plan.goal}"\n'
            f"Analyze {task.target} and give specific, actionable recommendations.\n"
            f"Task: {task.title}\n{task.description}"
        )
        target = self.repo_path / task.target
        if target.is_file():
            try:
                prompt += f"\n\n--- {task.target} ---\n{self.read_file(task.target)}"
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"[CONTROLLER] Analysing without file content: {e}")

        response = await self.backend.complete(
            role="analysis",
            messages=[{"role": "user", "content": prompt}],
        )
        task.result = response.content
        logger.info(f"[CONTROLLER] Analysis completed for {task.target}")

    async def _collect_bulk_approvals(self, plan: Plan) -> dict[str, bool]:
        candidates = [
            t for t in plan.tasks
            if t.type == "file_conversion" and t.user_approval_required
        ]
        if len(candidates) < BULK_APPROVAL_MIN_TASKS:
            return {}
        return await self.decisions.request_bulk_file_approval(candidates)

    # -----------------------------------------------------------------------
    # Bookkeeping
    # -----------------------------------------------------------------------

    def _skip(self, task: Task, reason: str) -> None:
        task.status = "skipped"
        task.error = reason
        console.print(f"  [yellow]⏭  {escape(task.title)}: {escape(reason)}[/]")
        self._emit(EventType.TASK_SKIPPED, {"task_id": task.id, "reason": reason})

    def _fail(self, task: Task, reason: str) -> None:
        task.status = "failed"
        task.error = reason
        console.print(f"  [red]❌ {escape(task.title)}: {escape(reason)}[/]")
        self._emit(EventType.TASK_FAILED, {"task_id": task.id, "reason": reason})

    def _emit(self, event_type: EventType, payload: dict) -> None:
        self.bus.emit(event_type, "controller", payload)

    # -----------------------------------------------------------------------
    # Display
    # -----------------------------------------------------------------------

    def _print_plan(self, plan: Plan) -> None:
        console.print(plan_table(plan))
        console.print(f"AI calls: [bold]{plan.ai_calls_used}/{plan.ai_calls_limit}[/]")

    def _print_summary(self, plan: Plan) -> None:
        summary = plan.summary()
        color = "green" if plan.status == "completed" else "red"
        console.print(Panel(
            f"Completed: {summary['completed_tasks']}/{summary['total_tasks']}  |  "
            f"Failed: {summary['failed_tasks']}  |  Skipped: {summary['skipped_tasks']}\n"
            f"AI calls: {summary['ai_calls_used']}/{summary['ai_calls_limit']}  |  "
            f"Duration: {summary['duration']}s",
            title=f"Plan {plan.status}",
            border_style=color,
        ))

        usage = self.rate_limiter.get_current_usage()
        if isinstance(self.backend, Router):
            spend = self.backend.budget.summary()
            console.print(Panel(
                f"Tokens: {spend['total_tokens']:,} / "
                f"Cost: ${spend['estimated_cost']:.4f} / "
                f"Calls: {spend['call_count']} / "
                f"Window: {usage.percent_used}%",
                title="💸 Usage",
                border_style="green",
            ))


def plan_table(plan: Plan) -> Table:
    table = Table(title="Execution Plan", border_style="magenta")
    table.add_column("#", style="dim")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("Target")
    table.add_column("Priority", style="dim")
    table.add_column("Approval")
    table.add_column("Status")

    for i, task in enumerate(plan.tasks, start=1):
        table.add_row(
            str(i),
            task.type,
            escape(task.title),
            escape(task.target),
            str(task.priority),
            "yes" if task.user_approval_required else "no",
            task.status,
        )
    return table
