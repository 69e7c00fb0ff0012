"""
TASKGATE Decision Manager — the human gate.

Every side-effecting task is turned into a Decision and parked until
somebody answers it or the timeout fires. Two tables keyed by decision
id hold the state:

  _pending  decision records, for UI enumeration
  _waiters  futures the requesting coroutines are suspended on

`handle_decision_response()` is the only way out of both tables, so a
decision resolves exactly once. Late or duplicate answers find nothing
and are ignored.
"""

from __future__ import annotations

import asyncio
import threading
from enum import Enum
from typing import Any, Callable, Protocol

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

from taskgate.event_bus import EventBus, EventType
from taskgate.state import ApprovalPresentation, Decision, Task, TerminalCommand

DEFAULT_TIMEOUT_SECONDS = 300.0

RISK_COLORS = {"low": "green", "medium": "yellow", "high": "red"}
RISK_ICONS = {"low": "✅", "medium": "⚠️", "high": "🚨"}

DEFAULT_TRUSTED_COMMANDS = [
    "npm --version",
    "node --version",
    "git --version",
    "git status",
    "npm audit",
    "npm run build",
    "npm run test",
    "npm run dev",
    "yarn --version",
    "yarn build",
    "yarn test",
    "yarn dev",
]

Responder = Callable[[str, bool], bool]


class ApprovalTimeoutError(Exception):
    """Nobody answered in time. The decision was recorded as rejected."""

    def __init__(self, decision_id: str, timeout: float):
        super().__init__(f"Approval request {decision_id} timed out after {timeout:g}s")
        self.decision_id = decision_id
        self.timeout = timeout


class ApprovalCancelledError(Exception):
    """The decision was withdrawn before anybody answered."""

    def __init__(self, decision_id: str):
        super().__init__(f"Decision {decision_id} cancelled")
        self.decision_id = decision_id


class BulkChoice(str, Enum):
    APPROVE_ALL = "approve_all"
    REJECT_ALL = "reject_all"
    INDIVIDUAL = "individual"


# ---------------------------------------------------------------------------
# UI collaborators
# ---------------------------------------------------------------------------

class ApprovalUI(Protocol):
    def present(self, decision: Decision, presentation: ApprovalPresentation, respond: Responder) -> None:
        """Show the request. The answer comes back later through `respond`."""
        ...

    async def choose_bulk(self, tasks: list[Task], kind: str) -> BulkChoice:
        ...

    # Optional: `withdraw(decision_id, reason)` retracts a prompt that can no
    # longer be answered. UIs without it are simply not told.


class AutoApproveUI:
    """Approves everything on the next loop iteration. Used by --yes."""

    def present(self, decision: Decision, presentation: ApprovalPresentation, respond: Responder) -> None:
        asyncio.get_running_loop().call_soon(respond, decision.id, True)

    async def choose_bulk(self, tasks: list[Task], kind: str) -> BulkChoice:
        return BulkChoice.APPROVE_ALL


class ConsoleApprovalUI:
    """Asks on the terminal.

    Prompts block on stdin, so each one runs on a daemon thread. A prompt
    that is withdrawn (timeout, cancellation) is abandoned rather than
    joined, and whatever is typed into it afterwards is ignored.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self._asks: dict[str, asyncio.Task] = {}

    def present(self, decision: Decision, presentation: ApprovalPresentation, respond: Responder) -> None:
        task = asyncio.ensure_future(self._ask(decision, presentation, respond))
        self._asks[decision.id] = task
        task.add_done_callback(lambda _: self._asks.pop(decision.id, None))

    def withdraw(self, decision_id: str, reason: str) -> None:
        task = self._asks.pop(decision_id, None)
        if task is None or task.done():
            return
        task.cancel()
        self.console.print(f"\n[yellow]Approval {decision_id} {escape(reason)}. That prompt no longer applies.[/]")

    async def _ask(self, decision: Decision, presentation: ApprovalPresentation, respond: Responder) -> None:
        details = presentation.details
        color = details.get("risk_color", "cyan")
        lines = [escape(presentation.message), ""]
        for key in ("command", "description", "target", "working_directory", "risk_level"):
            if details.get(key):
                lines.append(f"[bold]{key.replace('_', ' ').title()}:[/] {escape(str(details[key]))}")

        self.console.print(Panel("\n".join(lines), title=presentation.title, border_style=color))
        try:
            approved = await _prompt_in_thread(Confirm.ask, "[bold]Approve?[/]", console=self.console)
        except Exception as e:
            logger.error(f"[DECISION] Prompt failed for {decision.id}, rejecting: {type(e).__name__}: {e}")
            approved = False
        respond(decision.id, approved)

    async def choose_bulk(self, tasks: list[Task], kind: str) -> BulkChoice:
        self.console.print(
            f"[bold]The agent wants to modify {len(tasks)} {kind}s.[/] How would you like to proceed?"
        )
        for task in tasks:
            self.console.print(f"  [dim]{escape(task.target)}[/] {escape(task.title)}")
        try:
            answer = await _prompt_in_thread(
                Prompt.ask,
                "[bold]Choice[/]",
                choices=["approve", "reject", "review"],
                default="review",
                console=self.console,
            )
        except Exception as e:
            logger.error(f"[DECISION] Bulk prompt failed, rejecting all: {type(e).__name__}: {e}")
            return BulkChoice.REJECT_ALL
        return {
            "approve": BulkChoice.APPROVE_ALL,
            "reject": BulkChoice.REJECT_ALL,
        }.get(answer, BulkChoice.INDIVIDUAL)


def _prompt_in_thread(func: Callable[..., Any], *args: Any, **kwargs: Any) -> asyncio.Future:
    """Run a blocking prompt on a daemon thread and expose it as a future.

    Cancelling the future abandons the thread instead of waiting for input,
    so neither the loop nor interpreter shutdown blocks on stdin.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def settle(result: Any, error: BaseException | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def worker() -> None:
        try:
            result, error = func(*args, **kwargs), None
        except Exception as e:
            result, error = None, e
        if not loop.is_closed():
            loop.call_soon_threadsafe(settle, result, error)

    threading.Thread(target=worker, name="taskgate-prompt", daemon=True).start()
    return future


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class DecisionManager:
    def __init__(
        self,
        ui: ApprovalUI,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        trusted_commands: list[str] | None = None,
        bus: EventBus | None = None,
    ):
        self.ui = ui
        self.timeout = timeout
        self.trusted_commands = trusted_commands if trusted_commands is not None else list(DEFAULT_TRUSTED_COMMANDS)
        self.bus = bus
        self._pending: dict[str, Decision] = {}
        self._waiters: dict[str, asyncio.Future] = {}

    # -- generic path --------------------------------------------------------

    async def request_approval(self, decision: Decision, presentation: ApprovalPresentation) -> bool:
        """Park the caller until the decision is answered, times out, or is cancelled.

        Raises:
            ApprovalTimeoutError: No answer within `timeout`; the decision is
                recorded as rejected.
            ApprovalCancelledError: `cancel_all_pending_decisions()` ran first.
        """
        waiter = asyncio.get_running_loop().create_future()
        self._pending[decision.id] = decision
        self._waiters[decision.id] = waiter

        logger.info(f"[DECISION] Approval requested: {presentation.title} ({decision.id})")
        self._emit(EventType.APPROVAL_REQUESTED, {
            "decision_id": decision.id,
            "task_id": decision.task_id,
            "type": decision.type,
            "target": decision.target,
        })

        try:
            self.ui.present(decision, presentation, self.handle_decision_response)
        except Exception as e:
            logger.error(f"[DECISION] Approval UI failed for {decision.id}: {e}")
            self.handle_decision_response(decision.id, False)

        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout=self.timeout)
        except asyncio.TimeoutError:
            if self.handle_decision_response(decision.id, False):
                self._withdraw(decision.id, "timed out")
                logger.warning(f"[DECISION] {decision.id} timed out after {self.timeout:g}s — rejected")
                self._emit(EventType.APPROVAL_TIMED_OUT, {"decision_id": decision.id})
                raise ApprovalTimeoutError(decision.id, self.timeout)
            # Answered at the same instant the timer fired
            return waiter.result()
        except asyncio.CancelledError:
            self._pending.pop(decision.id, None)
            self._waiters.pop(decision.id, None)
            self._withdraw(decision.id, "was cancelled")
            raise

    def handle_decision_response(self, decision_id: str, approved: bool) -> bool:
        """Resolve a pending decision. Returns False when there was nothing to resolve."""
        decision = self._pending.pop(decision_id, None)
        waiter = self._waiters.pop(decision_id, None)
        if decision is None or waiter is None:
            logger.debug(f"[DECISION] Ignoring response for unknown decision {decision_id}")
            return False

        decision.user_response = "approved" if approved else "rejected"
        if not waiter.done():
            waiter.set_result(approved)

        logger.info(f"[DECISION] {decision_id}: {decision.user_response.upper()}")
        self._emit(EventType.APPROVAL_RESOLVED, {
            "decision_id": decision_id,
            "task_id": decision.task_id,
            "approved": approved,
        })
        return True

    # -- specialised builders ------------------------------------------------

    async def request_file_change_approval(self, task: Task) -> bool:
        decision = Decision(
            task_id=task.id,
            type="file_changes",
            description=f"Apply changes to {task.target}",
            target=task.target,
        )
        return await self.request_approval(decision, ApprovalPresentation(
            title="File Change Approval Required",
            message=f'The agent wants to modify "{task.target}". Do you approve this change?',
            details={
                "task_title": task.title,
                "description": task.description,
                "target": task.target,
                "type": "file",
            },
        ))

    async def request_module_change_approval(self, task: Task) -> bool:
        decision = Decision(
            task_id=task.id,
            type="module_changes",
            description=f"Apply changes to module at {task.target}",
            target=task.target,
        )
        return await self.request_approval(decision, ApprovalPresentation(
            title="Module Change Approval Required",
            message=f'The agent wants to modify multiple files in "{task.target}". Do you approve these changes?',
            details={
                "task_title": task.title,
                "description": task.description,
                "target": task.target,
                "type": "module",
            },
        ))

    async def request_terminal_command_approval(self, command: TerminalCommand, task_id: str | None = None) -> bool:
        decision = Decision(
            task_id=task_id or command.id,
            type="terminal_command",
            description=command.description,
            target=command.working_directory,
            changes=command.model_dump(),
        )
        return await self.request_approval(decision, ApprovalPresentation(
            title="Terminal Command Approval Required",
            message=f"The agent wants to execute a {command.risk_level} risk command. Do you approve?",
            details={
                "command": command.command,
                "description": command.description,
                "working_directory": command.working_directory,
                "risk_level": command.risk_level,
                "risk_color": RISK_COLORS.get(command.risk_level, "dim"),
                "risk_icon": RISK_ICONS.get(command.risk_level, "ℹ️"),
                "type": "command",
            },
        ))

    async def request_change_approval(self, decision: Decision) -> bool:
        return await self.request_approval(decision, ApprovalPresentation(
            title="Changes Approval Required",
            message=f'The agent has prepared changes for "{decision.target}". Do you want to apply them?',
            details={
                "description": decision.description,
                "target": decision.target,
                "type": decision.type,
                "changes": decision.changes,
            },
        ))

    async def request_bulk_file_approval(self, tasks: list[Task]) -> dict[str, bool]:
        """One three-way choice; only 'individual' falls through to per-task requests."""
        choice = await self.ui.choose_bulk(tasks, "file")
        logger.info(f"[DECISION] Bulk choice for {len(tasks)} files: {choice.value}")

        if choice is BulkChoice.APPROVE_ALL:
            return {task.id: True for task in tasks}
        if choice is BulkChoice.REJECT_ALL:
            return {task.id: False for task in tasks}

        results: dict[str, bool] = {}
        for task in tasks:
            try:
                results[task.id] = await self.request_file_change_approval(task)
            except ApprovalTimeoutError:
                results[task.id] = False
        return results

    # -- housekeeping --------------------------------------------------------

    def is_quick_approvable(self, command: TerminalCommand | str) -> bool:
        """Trusted read-only commands skip the approval round-trip."""
        text = (command.command if isinstance(command, TerminalCommand) else command).strip().lower()
        return any(text.startswith(trusted.lower()) for trusted in self.trusted_commands)

    def get_pending_decisions(self) -> list[Decision]:
        return list(self._pending.values())

    def cancel_all_pending_decisions(self) -> int:
        """Fail every waiter with ApprovalCancelledError and clear both tables."""
        waiters, self._waiters = self._waiters, {}
        self._pending = {}
        for decision_id, waiter in waiters.items():
            if not waiter.done():
                waiter.set_exception(ApprovalCancelledError(decision_id))
            self._withdraw(decision_id, "was cancelled")
        if waiters:
            logger.warning(f"[DECISION] Cancelled {len(waiters)} pending decisions")
            self._emit(EventType.APPROVALS_CANCELLED, {"count": len(waiters)})
        return len(waiters)

    def _withdraw(self, decision_id: str, reason: str) -> None:
        withdraw = getattr(self.ui, "withdraw", None)
        if withdraw is not None:
            withdraw(decision_id, reason)

    def _emit(self, event_type: EventType, payload: dict) -> None:
        if self.bus:
            self.bus.emit(event_type, "decisions", payload)
