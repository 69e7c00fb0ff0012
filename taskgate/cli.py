"""
TASKGATE CLI — The Interface

  taskgate run "<goal>" --scope file --target src/app.py --repo <path>
  taskgate plan "<goal>" --scope repository            (plan only)

Plus utilities:
  - taskgate check-command "<cmd>"   (validation + risk, nothing runs)
  - taskgate status                  (API keys + effective limits)
  - taskgate init <path>             (bootstrap .taskgate in a repo)
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from taskgate.identity import __codename__, __tagline__, __version__, BANNER
from taskgate.config_loader import load_config, validate_api_keys
from taskgate.controller import Controller, plan_table
from taskgate.decisions import DecisionManager, AutoApproveUI
from taskgate.state import SCOPES
from taskgate.task_planner import CircularDependencyError, WorkspaceNotFoundError
from taskgate.terminal import describe_command, validate_command, assess_command_risk

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".taskgate" / ".env")

app = typer.Typer(
    name="taskgate",
    help=f"{__codename__} — {__tagline__}\nPlan, approve and run agent tasks.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

RISK_COLORS = {"low": "green", "medium": "yellow", "high": "red"}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _check_scope(scope: str) -> None:
    if scope not in SCOPES:
        console.print(f"[red]Unknown scope '{scope}'. Choose from: {', '.join(SCOPES)}[/]")
        raise typer.Exit(1)


def _check_repo(repo: Path) -> Path:
    repo = repo.resolve()
    if not repo.is_dir():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)
    return repo


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def run(
    goal: str = typer.Argument(..., help="What the agent should achieve"),
    scope: str = typer.Option("repository", "--scope", "-s", help="file, folder or repository"),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="File or folder, relative to the repo"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Path to the workspace (default: cwd)"),
    auto_approve: bool = typer.Option(False, "--yes", "-y", help="Approve every decision automatically"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Plan a goal and execute it behind approval gates."""
    _print_banner()
    _configure_logging(verbose)
    _check_scope(scope)
    repo = _check_repo(repo or Path.cwd())

    controller = Controller(repo_path=repo, config=load_config(repo), auto_approve=auto_approve)

    async def _session():
        try:
            return await controller.run(goal, scope, target)
        finally:
            await controller.shutdown()

    try:
        plan = asyncio.run(_session())
    except (WorkspaceNotFoundError, CircularDependencyError) as e:
        console.print(f"[red]Planning failed: {escape(str(e))}[/]")
        raise typer.Exit(1)

    color = "green" if plan.status == "completed" else "red"
    console.print(f"\n[bold {color}]Status: {plan.status}[/]")
    if plan.status != "completed":
        raise typer.Exit(1)


@app.command()
def plan(
    goal: str = typer.Argument(..., help="What the agent should achieve"),
    scope: str = typer.Option("repository", "--scope", "-s", help="file, folder or repository"),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="File or folder, relative to the repo"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Path to the workspace (default: cwd)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Plan a goal and print the ordered tasks. Nothing is executed."""
    _configure_logging(verbose)
    _check_scope(scope)
    repo = _check_repo(repo or Path.cwd())

    controller = Controller(repo_path=repo, config=load_config(repo), auto_approve=True)

    async def _session():
        try:
            return await controller.planner.create_plan(goal, scope, target)
        finally:
            await controller.shutdown()

    try:
        result = asyncio.run(_session())
    except (WorkspaceNotFoundError, CircularDependencyError) as e:
        console.print(f"[red]Planning failed: {escape(str(e))}[/]")
        raise typer.Exit(1)
    console.print(plan_table(result))
    console.print(f"AI calls: [bold]{result.ai_calls_used}/{result.ai_calls_limit}[/]")


@app.command("check-command")
def check_command(
    command: str = typer.Argument(..., help="Shell command to inspect"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Use this repo's config"),
):
    """Validate a command and show its risk. The command is never run."""
    config = load_config(repo.resolve() if repo else None)

    verdict = validate_command(command, max_length=config.terminal.max_command_length)
    risk = assess_command_risk(command)
    if command.strip() in config.terminal.auto_approve_commands:
        risk = "low"
    trusted = DecisionManager(AutoApproveUI(), trusted_commands=config.approvals.trusted_commands)

    table = Table(title="Command Check", border_style="cyan")
    table.add_column("Property")
    table.add_column("Value")
    table.add_row("Command", escape(command))
    table.add_row("Valid", "[green]✓ yes[/]" if verdict.valid else f"[red]✗ {escape(verdict.reason or '')}[/]")
    table.add_row("Risk", f"[{RISK_COLORS[risk]}]{risk}[/]")
    table.add_row("Description", escape(describe_command(command)))
    table.add_row("Quick approvable", "yes" if trusted.is_quick_approvable(command) else "no")
    console.print(table)

    if not verdict.valid:
        raise typer.Exit(1)


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check TASKGATE configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        key_table.add_row(key, "[green]✓ Available[/]" if available else "[red]✗ Missing[/]")
    console.print(key_table)

    config = load_config(repo.resolve() if repo else None)
    console.print(f"\n[bold]Routing:[/]")
    console.print(f"  Planner:  {config.routing.planner}")
    console.print(f"  Analysis: {config.routing.analysis}")

    console.print(f"\n[bold]Limits:[/]")
    console.print(f"  AI calls/plan:     {config.limits.ai_calls_limit}")
    console.print(f"  Tokens/minute:     {config.rate_limit.tokens_per_minute:,}")
    console.print(f"  Requests/minute:   {config.rate_limit.requests_per_minute}")
    console.print(f"  Approval timeout:  {config.approvals.timeout_seconds:g}s")
    console.print(f"  Command timeout:   {config.terminal.timeout_seconds:g}s")
    console.print(f"  Stop on failure:   {config.limits.stop_on_failure}")


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .taskgate directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    tg_dir = repo / ".taskgate"
    tg_dir.mkdir(exist_ok=True)
    (tg_dir / "logs").mkdir(exist_ok=True)

    config_path = tg_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# TASKGATE repo-level config overrides
# These merge with the built-in defaults.

# routing:
#   planner: "anthropic/claude-sonnet-4-20250514"

# limits:
#   ai_calls_limit: 5
#   stop_on_failure: false

# rate_limit:
#   tokens_per_minute: 30000
#   requests_per_minute: 50

# approvals:
#   timeout_seconds: 300
""")

    gitignore = repo / ".gitignore"
    entry = ".taskgate/logs/"
    if gitignore.exists():
        if entry not in gitignore.read_text():
            with open(gitignore, "a") as f:
                f.write(f"\n# TASKGATE\n{entry}\n")
    else:
        gitignore.write_text(f"# TASKGATE\n{entry}\n")

    console.print(Panel(
        f"Config: {config_path}\nLogs:   {tg_dir / 'logs'}",
        title=f"[green]✅ Initialized TASKGATE in {tg_dir}[/]",
        border_style="green",
    ))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(str(msg).rstrip(), style="dim", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(str(msg).rstrip(), style="dim", highlight=False, markup=False),
            level="WARNING",
            format="{message}",
        )


if __name__ == "__main__":
    app()
