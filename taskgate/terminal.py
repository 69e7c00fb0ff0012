"""
TASKGATE Terminal — validator, risk classifier, executor.

Order of gates for any shell command:
  1. validate_command()     pure policy check, rejects injection + catastrophes
  2. assess_command_risk()  low / medium / high, independent of validity
  3. approval               (decisions.py)
  4. execute_command()      bounded subprocess, never raises

Commands are tokenised with shlex and executed without a shell, so no
shell feature the validator did not see can reach the process boundary.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import shlex
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from taskgate.config_loader import TerminalConfig
from taskgate.event_bus import EventBus, EventType
from taskgate.state import CommandResult, RiskLevel, TerminalCommand

LOGGED_OUTPUT_CHARS = 500
TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127
READ_CHUNK_BYTES = 64 * 1024


class CommandRejectedError(Exception):
    """A command failed validation and was never run."""

    def __init__(self, command: str, reason: str):
        super().__init__(f"Command rejected: {reason}")
        self.command = command
        self.reason = reason


# ---------------------------------------------------------------------------
# Rule tables (first match wins)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RiskRule:
    pattern: re.Pattern
    level: RiskLevel
    tag: str


BANNED_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\brm\s+-[a-z]*r[a-z]*\s+(?:/|/\*|\*|~/?)\s*$", re.I), "recursive root deletion"),
    (re.compile(r"\bformat\s+[a-z]:", re.I), "disk formatting"),
    (re.compile(r"\bdel\s+(?:/[sq]\s+)+\*\.\*\s*$", re.I), "recursive wildcard deletion"),
    (re.compile(r"\bdd\s+if=.*of=/dev/(?:sd[a-z]|hd[a-z]|nvme\d|disk\d)"), "raw device write"),
    (re.compile(r">\s*/dev/(?:sd[a-z]|hd[a-z]|nvme\d|disk\d)"), "raw device write"),
    (re.compile(r"\bmkfs(?:\.\w+)?\b"), "filesystem creation"),
    (re.compile(r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"), "fork bomb"),
]

INJECTION_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"[;&|]"), "command chaining"),
    (re.compile(r"`"), "backtick substitution"),
    (re.compile(r"\$\("), "command substitution"),
    (re.compile(r"\$\{"), "variable expansion"),
    (re.compile(r"[\r\n]"), "embedded newline"),
]

RISK_RULES: list[RiskRule] = [
    # high tier
    RiskRule(re.compile(r"\bsudo\s+"), "high", "privilege escalation"),
    RiskRule(re.compile(r"\bsu(?:\s+|$)"), "high", "privilege escalation"),
    RiskRule(re.compile(r"\brm\s+-[a-z]*(?:rf|fr)"), "high", "recursive force delete"),
    RiskRule(re.compile(r"\bdel\s+/[sq]"), "high", "recursive delete"),
    RiskRule(re.compile(r"^format\s+"), "high", "disk formatting"),
    RiskRule(re.compile(r"\bfdisk\b"), "high", "disk partitioning"),
    RiskRule(re.compile(r"\bdd\s+if="), "high", "raw disk copy"),
    RiskRule(re.compile(r"\bmkfs\."), "high", "filesystem creation"),
    RiskRule(re.compile(r"\bchmod\s+(?:-r\s+)?777\b"), "high", "world-writable permissions"),
    RiskRule(re.compile(r"\b(?:shutdown|reboot|halt|poweroff)\b"), "high", "power control"),
    # medium tier
    RiskRule(re.compile(r"\bnpm\s+(?:install|i)\s+(?:.*\s)?(?:-g|--global)\b"), "medium", "global package install"),
    RiskRule(re.compile(r"\byarn\s+global\b"), "medium", "global package install"),
    RiskRule(re.compile(r"\bpip3?\s+install\b"), "medium", "python package install"),
    RiskRule(re.compile(r"\bgem\s+install\b"), "medium", "ruby package install"),
    RiskRule(re.compile(r"\bdocker\s+"), "medium", "container control"),
    RiskRule(re.compile(r"\bgit\s+reset\s+--hard\b"), "medium", "hard reset"),
    RiskRule(re.compile(r"\bgit\s+clean\s+-[a-z]*f"), "medium", "untracked file removal"),
    RiskRule(re.compile(r"\brm\s+"), "medium", "file deletion"),
    RiskRule(re.compile(r"\bdel\s+"), "medium", "file deletion"),
    RiskRule(re.compile(r"\brmdir\b"), "medium", "directory deletion"),
    RiskRule(re.compile(r"\bchmod\b"), "medium", "permission change"),
    RiskRule(re.compile(r"\bchown\b"), "medium", "ownership change"),
    RiskRule(re.compile(r"\bmv\s+.*\*"), "medium", "wildcard move"),
    RiskRule(re.compile(r"\bcp\s+.*\*"), "medium", "wildcard copy"),
]

KNOWN_DESCRIPTIONS: list[tuple[str, str]] = [
    ("npm install", "Install project dependencies"),
    ("npm ci", "Clean install of dependencies"),
    ("npm run build", "Build the project"),
    ("npm run dev", "Start development server"),
    ("npm run start", "Start the application"),
    ("npm run test", "Run tests"),
    ("npm test", "Run tests"),
    ("npm audit", "Check for security vulnerabilities"),
    ("npm update", "Update dependencies"),
    ("yarn install", "Install project dependencies with Yarn"),
    ("yarn build", "Build the project with Yarn"),
    ("yarn dev", "Start development server with Yarn"),
    ("yarn test", "Run tests with Yarn"),
    ("git status", "Check repository status"),
    ("git add", "Stage files for commit"),
    ("git commit", "Commit changes"),
    ("git push", "Push changes to remote repository"),
    ("git pull", "Pull changes from remote repository"),
    ("python -m pytest", "Run tests"),
    ("pytest", "Run tests"),
]

BASE_DESCRIPTIONS: dict[str, str] = {
    "npm": "Run npm command",
    "yarn": "Run Yarn command",
    "git": "Run Git command",
    "docker": "Run Docker command",
    "node": "Execute Node.js script",
    "python": "Execute Python script",
    "python3": "Execute Python script",
    "pip": "Install Python package",
    "curl": "Make HTTP request",
    "wget": "Download file",
    "ls": "List directory contents",
    "dir": "List directory contents",
    "cd": "Change directory",
    "mkdir": "Create directory",
    "cp": "Copy files",
    "copy": "Copy files",
    "mv": "Move/rename files",
    "move": "Move/rename files",
    "rm": "Delete files",
    "del": "Delete files",
}


@dataclass
class ValidationResult:
    valid: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Pure policy functions
# ---------------------------------------------------------------------------

def validate_command(command: str, max_length: int = 500) -> ValidationResult:
    """Reject empty, catastrophic, overlong or injection-prone input."""
    if not command or not command.strip():
        return ValidationResult(False, "Command cannot be empty")

    for pattern, tag in BANNED_PATTERNS:
        if pattern.search(command):
            return ValidationResult(False, f"Command matches a dangerous pattern ({tag}) and has been blocked")

    if len(command) > max_length:
        return ValidationResult(False, f"Command is too long ({len(command)} > {max_length} characters)")

    for pattern, tag in INJECTION_PATTERNS:
        if pattern.search(command):
            return ValidationResult(False, f"Command contains potentially unsafe characters ({tag})")

    return ValidationResult(True)


def assess_command_risk(command: str) -> RiskLevel:
    """Classify a command. High tier first, then medium, default low."""
    normalized = command.lower().strip()
    for rule in RISK_RULES:
        if rule.pattern.search(normalized):
            return rule.level
    return "low"


def describe_command(command: str) -> str:
    normalized = command.lower().strip()
    for prefix, description in KNOWN_DESCRIPTIONS:
        if normalized.startswith(prefix):
            return description
    base = normalized.split(" ")[0] if normalized else ""
    return BASE_DESCRIPTIONS.get(base, f"Execute: {command.strip()}")


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class TerminalExecutor:
    """Builds TerminalCommand records and runs them under hard limits."""

    def __init__(
        self,
        workspace_root: Path | str,
        config: TerminalConfig | None = None,
        bus: EventBus | None = None,
    ):
        self.workspace_root = Path(workspace_root).resolve()
        self.config = config or TerminalConfig()
        self.bus = bus

    def validate_command(self, command: str) -> ValidationResult:
        return validate_command(command, self.config.max_command_length)

    def assess_command_risk(self, command: str) -> RiskLevel:
        return assess_command_risk(command)

    def create_safe_command(self, raw: str, working_directory: str | Path | None = None) -> TerminalCommand:
        command = TerminalCommand(
            command=raw.strip(),
            working_directory=str(working_directory or self.workspace_root),
            description=describe_command(raw),
            risk_level=assess_command_risk(raw),
            user_approval_required=True,
        )

        if command.command.lower() in self.config.auto_approve_commands:
            command.user_approval_required = False
            command.risk_level = "low"

        return command

    async def execute_command(self, command: TerminalCommand) -> CommandResult:
        """Run a command once. Always returns a result, never raises."""
        if command.executed and command.result is not None:
            logger.warning(f"[TERMINAL] Refusing to re-execute {command.id}")
            return command.result

        logger.info(f"[TERMINAL] Executing: {command.command}")
        logger.debug(f"[TERMINAL] Working directory: {command.working_directory}")

        verdict = self.validate_command(command.command)
        if not verdict.valid:
            result = CommandResult(success=False, error=verdict.reason, exit_code=1)
        else:
            result = await self._run(command)

        command.executed = True
        command.result = result

        if result.success:
            logger.info("[TERMINAL] Command completed successfully")
        else:
            logger.warning(f"[TERMINAL] Command failed with exit code {result.exit_code}: {result.error}")

        self._emit(EventType.COMMAND_EXECUTED, {
            "command_id": command.id,
            "command": command.command,
            "working_directory": command.working_directory,
            "risk_level": command.risk_level,
            "success": result.success,
            "exit_code": result.exit_code,
            "output": result.output[:LOGGED_OUTPUT_CHARS],
            "error": (result.error or "")[:LOGGED_OUTPUT_CHARS] or None,
        })
        return result

    async def _run(self, command: TerminalCommand) -> CommandResult:
        try:
            argv = shlex.split(command.command)
        except ValueError as e:
            return CommandResult(success=False, error=f"Could not parse command: {e}", exit_code=1)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=command.working_directory or None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            return CommandResult(success=False, error=f"Command not found: {e.filename or argv[0]}", exit_code=NOT_FOUND_EXIT_CODE)
        except OSError as e:
            return CommandResult(success=False, error=str(e), exit_code=1)

        limit = self.config.max_output_bytes
        overflowed = False

        async def drain(stream: asyncio.StreamReader) -> bytes:
            # Reads to EOF so the pipe closes, but never keeps more than `limit` bytes
            nonlocal overflowed
            kept = bytearray()
            while True:
                chunk = await stream.read(READ_CHUNK_BYTES)
                if not chunk:
                    return bytes(kept)
                room = limit - len(kept)
                if len(chunk) > room:
                    kept.extend(chunk[:room])
                    if not overflowed:
                        overflowed = True
                        logger.warning(f"[TERMINAL] Output passed {limit} bytes, killing pid {proc.pid}")
                        _kill(proc)
                else:
                    kept.extend(chunk)

        readers = asyncio.gather(drain(proc.stdout), drain(proc.stderr))
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            _kill(proc)
            await readers
            await proc.wait()
            return CommandResult(
                success=False,
                error=f"Command timed out after {self.config.timeout_seconds:g}s",
                exit_code=TIMEOUT_EXIT_CODE,
            )
        except asyncio.CancelledError:
            _kill(proc)
            readers.cancel()
            raise

        stdout, stderr = await readers
        output = stdout.decode("utf-8", errors="replace")
        errors = stderr.decode("utf-8", errors="replace")

        if overflowed:
            return CommandResult(
                success=False,
                output=output,
                error=f"Output exceeded {limit} bytes",
                exit_code=proc.returncode or 1,
            )

        if proc.returncode != 0:
            return CommandResult(
                success=False,
                output=output,
                error=f"Command failed with exit code {proc.returncode}\n{errors}".rstrip(),
                exit_code=proc.returncode,
            )

        return CommandResult(success=True, output=output, exit_code=0)

    def _emit(self, event_type: EventType, payload: dict) -> None:
        if self.bus:
            self.bus.emit(event_type, "terminal", payload)


def _kill(proc: asyncio.subprocess.Process) -> None:
    # The process may already have exited on its own
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
