import shlex
import sys

import pytest

from taskgate.config_loader import TerminalConfig
from taskgate.event_bus import EventBus
from taskgate.terminal import (
    TIMEOUT_EXIT_CODE,
    TerminalExecutor,
    assess_command_risk,
    describe_command,
    validate_command,
)

PYTHON = shlex.quote(sys.executable)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("command", ["", "   "])
def test_empty_command_is_invalid(command):
    verdict = validate_command(command)
    assert not verdict.valid
    assert "empty" in verdict.reason


@pytest.mark.parametrize("command", [
    "rm -rf /",
    "rm -rf *",
    "format c:",
    "del /s /q *.*",
    "dd if=/dev/zero of=/dev/sda",
    "mkfs.ext4 /dev/sdb1",
    ":(){ :|:& };:",
])
def test_banned_patterns_are_blocked(command):
    verdict = validate_command(command)
    assert not verdict.valid
    assert "dangerous pattern" in verdict.reason


@pytest.mark.parametrize("command", [
    "ls; cat /etc/passwd",
    "npm test && rm -rf build",
    "cat package.json | grep react",
    "echo `whoami`",
    "echo $(whoami)",
    "echo ${HOME}",
    "ls\nwhoami",
])
def test_injection_characters_are_rejected(command):
    verdict = validate_command(command)
    assert not verdict.valid
    assert "unsafe characters" in verdict.reason


def test_overlong_command_is_rejected():
    verdict = validate_command("echo " + "a" * 600)
    assert not verdict.valid
    assert "too long" in verdict.reason


def test_plain_command_is_valid():
    assert validate_command("npm run build").valid
    assert validate_command("git status").valid


def test_bare_braces_are_allowed():
    # No shell runs the command, so braces reach the process literally
    assert validate_command("python -c \"print({1: 2})\"").valid
    assert validate_command("echo {a,b}").valid


# ---------------------------------------------------------------------------
# Risk and description
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("command, level", [
    ("sudo apt install curl", "high"),
    ("sudo rm -rf /tmp/x", "high"),
    ("rm -rf node_modules", "high"),
    ("chmod 777 script.sh", "high"),
    ("shutdown now", "high"),
    ("npm install -g typescript", "medium"),
    ("pip install requests", "medium"),
    ("git reset --hard HEAD~1", "medium"),
    ("rm old.txt", "medium"),
    ("mv src/*.js lib/", "medium"),
    ("npm run build", "low"),
    ("git status", "low"),
    ("ls -la", "low"),
])
def test_assess_command_risk(command, level):
    assert assess_command_risk(command) == level


def test_risk_is_independent_of_validity():
    # Injection makes it invalid, the sudo still makes it high risk
    assert not validate_command("sudo ls; whoami").valid
    assert assess_command_risk("sudo ls; whoami") == "high"


def test_describe_command():
    assert describe_command("npm install") == "Install project dependencies"
    assert describe_command("git status --short") == "Check repository status"
    assert describe_command("curl https://example.com") == "Make HTTP request"
    assert describe_command("frobnicate --all") == "Execute: frobnicate --all"


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

def test_create_safe_command_auto_approves_exact_matches(tmp_path):
    executor = TerminalExecutor(tmp_path)

    cmd = executor.create_safe_command("git status")
    assert cmd.user_approval_required is False
    assert cmd.risk_level == "low"
    assert cmd.working_directory == str(tmp_path.resolve())

    cmd = executor.create_safe_command("rm notes.txt")
    assert cmd.user_approval_required is True
    assert cmd.risk_level == "medium"
    assert cmd.executed is False


@pytest.mark.asyncio
async def test_execute_command_success(tmp_path):
    bus = EventBus()
    events = []
    bus.subscribe(events.append)
    executor = TerminalExecutor(tmp_path, bus=bus)

    cmd = executor.create_safe_command(f'{PYTHON} -c "print(42)"')
    result = await executor.execute_command(cmd)

    assert result.success is True
    assert result.exit_code == 0
    assert result.output.strip() == "42"
    assert cmd.executed is True
    assert cmd.result == result
    assert events[-1].event_type == "command_executed"


@pytest.mark.asyncio
async def test_execute_command_nonzero_exit(tmp_path):
    executor = TerminalExecutor(tmp_path)
    cmd = executor.create_safe_command(f'{PYTHON} -c "raise SystemExit(3)"')

    result = await executor.execute_command(cmd)

    assert result.success is False
    assert result.exit_code == 3
    assert "exit code 3" in result.error


@pytest.mark.asyncio
async def test_execute_command_runs_in_working_directory(tmp_path):
    (tmp_path / "sub").mkdir()
    executor = TerminalExecutor(tmp_path)
    cmd = executor.create_safe_command(
        f'{PYTHON} -c "print(__import__(\'os\').getcwd())"',
        working_directory=tmp_path / "sub",
    )

    result = await executor.execute_command(cmd)

    assert result.success is True
    assert result.output.strip().endswith("sub")


@pytest.mark.asyncio
async def test_execute_command_times_out(tmp_path):
    executor = TerminalExecutor(tmp_path, TerminalConfig(timeout_seconds=0.5))
    cmd = executor.create_safe_command(f'{PYTHON} -c "__import__(\'time\').sleep(10)"')

    result = await executor.execute_command(cmd)

    assert result.success is False
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_execute_command_missing_binary(tmp_path):
    executor = TerminalExecutor(tmp_path)
    cmd = executor.create_safe_command("definitely-not-a-real-binary-xyz --flag")

    result = await executor.execute_command(cmd)

    assert result.success is False
    assert result.exit_code == 127


@pytest.mark.asyncio
async def test_execute_command_revalidates_before_running(tmp_path):
    executor = TerminalExecutor(tmp_path)
    cmd = executor.create_safe_command("ls")
    cmd.command = "ls; rm -rf build"

    result = await executor.execute_command(cmd)

    assert result.success is False
    assert "unsafe characters" in result.error


@pytest.mark.asyncio
async def test_execute_command_never_runs_twice(tmp_path):
    marker = tmp_path / "count.txt"
    executor = TerminalExecutor(tmp_path)
    script = f"open({str(marker)!r}, 'a').write('x')"
    cmd = executor.create_safe_command(f'{PYTHON} -c "{script}"')

    first = await executor.execute_command(cmd)
    second = await executor.execute_command(cmd)

    assert first.success is True
    assert second is first
    assert marker.read_text() == "x"


@pytest.mark.asyncio
async def test_execute_command_output_limit(tmp_path):
    executor = TerminalExecutor(tmp_path, TerminalConfig(max_output_bytes=100))
    cmd = executor.create_safe_command(f'{PYTHON} -c "print(\'a\' * 1000)"')

    result = await executor.execute_command(cmd)

    assert result.success is False
    assert "exceeded" in result.error
    assert len(result.output) <= 100


ENDLESS_STDOUT = "[print('x' * 65536, flush=True) for _ in iter(int, 1)]"
ENDLESS_STDERR = "[__import__('sys').stderr.write('e' * 65536) for _ in iter(int, 1)]"


@pytest.mark.asyncio
@pytest.mark.parametrize("script", [ENDLESS_STDOUT, ENDLESS_STDERR])
async def test_endless_output_kills_process_at_limit(tmp_path, script):
    # The writer never stops, so only the output cap can end it before the timeout
    executor = TerminalExecutor(tmp_path, TerminalConfig(max_output_bytes=1024, timeout_seconds=30))
    cmd = executor.create_safe_command(f'{PYTHON} -c "{script}"')

    result = await executor.execute_command(cmd)

    assert result.success is False
    assert result.exit_code != TIMEOUT_EXIT_CODE
    assert result.error == "Output exceeded 1024 bytes"
    assert len(result.output) <= 1024


@pytest.mark.asyncio
async def test_chatty_command_still_times_out(tmp_path):
    executor = TerminalExecutor(
        tmp_path,
        TerminalConfig(max_output_bytes=1024 * 1024, timeout_seconds=0.5),
    )
    script = "[print('y', flush=True) or __import__('time').sleep(0.01) for _ in iter(int, 1)]"
    cmd = executor.create_safe_command(f'{PYTHON} -c "{script}"')

    result = await executor.execute_command(cmd)

    assert result.success is False
    assert result.exit_code == TIMEOUT_EXIT_CODE
