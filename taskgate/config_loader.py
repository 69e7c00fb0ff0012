"""
Configuration loader for TASKGATE.
Merges defaults with per-repo .taskgate/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    planner: str = "anthropic/claude-sonnet-4-20250514"
    analysis: str = "anthropic/claude-sonnet-4-20250514"


class LimitsConfig(BaseModel):
    ai_calls_limit: int = Field(default=5, ge=1)
    max_response_tokens: int = 4096
    stop_on_failure: bool = False


class RateLimitConfig(BaseModel):
    tokens_per_minute: int = Field(default=30_000, gt=0)
    requests_per_minute: int = Field(default=50, gt=0)
    burst_threshold: int | None = None
    window_seconds: float = 60.0
    min_wait_seconds: float = 1.0
    max_attempts: int = 3
    poll_interval_seconds: float = 1.0
    admit_after_max_attempts: bool = True

    @model_validator(mode="after")
    def default_burst(self) -> "RateLimitConfig":
        if self.burst_threshold is None:
            self.burst_threshold = int(self.tokens_per_minute * 0.8)
        return self


class ApprovalConfig(BaseModel):
    timeout_seconds: float = 300.0
    trusted_commands: list[str] = Field(default_factory=lambda: [
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
    ])


class TerminalConfig(BaseModel):
    timeout_seconds: float = 60.0
    max_output_bytes: int = 1024 * 1024
    max_command_length: int = 500
    auto_approve_commands: list[str] = Field(default_factory=lambda: [
        "npm --version",
        "node --version",
        "git --version",
        "git status",
        "ls",
        "dir",
        "pwd",
        "whoami",
    ])


class FileTrackerConfig(BaseModel):
    max_entries: int = Field(default=50, gt=0)
    max_file_size: int = 2 * 1024 * 1024
    ttl_seconds: float = 600.0
    min_read_interval_seconds: float = 30.0
    evict_fraction: float = Field(default=0.25, gt=0, le=1)


class LoggingConfig(BaseModel):
    execution_log: str = ".taskgate/logs/execution.jsonl"


class TaskGateConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    approvals: ApprovalConfig = Field(default_factory=ApprovalConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    file_tracker: FileTrackerConfig = Field(default_factory=FileTrackerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var -> (section, key, type)
_ENV_OVERRIDES = {
    "TASKGATE_TOKENS_PER_MINUTE": ("rate_limit", "tokens_per_minute", int),
    "TASKGATE_REQUESTS_PER_MINUTE": ("rate_limit", "requests_per_minute", int),
    "TASKGATE_APPROVAL_TIMEOUT": ("approvals", "timeout_seconds", float),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (section, key, cast) in _ENV_OVERRIDES.items():
        raw = os.environ.get(var)
        if raw is None or not raw.strip():
            continue
        try:
            value = cast(raw)
        except ValueError:
            raise ValueError(f"Invalid value for {var}: {raw!r}")
        overrides.setdefault(section, {})[key] = value
    return overrides


def load_config(repo_path: Path | None = None) -> TaskGateConfig:
    """
    Load config by merging:
      1. Built-in defaults (taskgate/config.yaml)
      2. Repo-level overrides (<repo>/.taskgate/config.yaml)
      3. Environment variable overrides
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Repo overrides
    if repo_path:
        repo_config = repo_path / ".taskgate" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env overrides
    base = _deep_merge(base, _env_overrides())

    return TaskGateConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
