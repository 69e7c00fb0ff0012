import pytest

from taskgate.config_loader import load_config


def test_defaults_load():
    config = load_config()
    assert config.limits.ai_calls_limit == 5
    assert config.rate_limit.tokens_per_minute == 30000
    assert config.rate_limit.requests_per_minute == 50
    assert config.rate_limit.burst_threshold == 24000
    assert config.approvals.timeout_seconds == 300
    assert config.file_tracker.max_entries == 50
    assert config.terminal.max_command_length == 500
    assert "git status" in config.approvals.trusted_commands


def test_repo_overrides_merge_with_defaults(tmp_path):
    (tmp_path / ".taskgate").mkdir()
    (tmp_path / ".taskgate" / "config.yaml").write_text(
        "rate_limit:\n  tokens_per_minute: 1000\nlimits:\n  stop_on_failure: true\n"
    )

    config = load_config(tmp_path)

    assert config.rate_limit.tokens_per_minute == 1000
    assert config.rate_limit.burst_threshold == 800
    assert config.rate_limit.requests_per_minute == 50
    assert config.limits.stop_on_failure is True
    assert config.limits.ai_calls_limit == 5


def test_env_overrides_win(tmp_path, monkeypatch):
    monkeypatch.setenv("TASKGATE_APPROVAL_TIMEOUT", "12.5")
    monkeypatch.setenv("TASKGATE_REQUESTS_PER_MINUTE", "7")

    config = load_config(tmp_path)

    assert config.approvals.timeout_seconds == 12.5
    assert config.rate_limit.requests_per_minute == 7


def test_bad_env_value_raises(monkeypatch):
    monkeypatch.setenv("TASKGATE_TOKENS_PER_MINUTE", "lots")
    with pytest.raises(ValueError, match="TASKGATE_TOKENS_PER_MINUTE"):
        load_config()
