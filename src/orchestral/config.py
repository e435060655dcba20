"""Configuration: GlobalConfig + ProjectConfig.

GlobalConfig: defaults from ~/.orchestral/config.yaml.
ProjectConfig: per-project overrides from orchestral.yaml.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_WORKER_COMMAND = 'claude "$(cat {prompt})"'
DEFAULT_RECOVERABLE_ERRORS = ["crash", "timeout", "validation"]


@dataclass
class AutoRetryConfig:
    """Worker restart policy on recoverable failures."""
    enabled: bool = True
    max_attempts: int = 2
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    recoverable_errors: list[str] = field(
        default_factory=lambda: list(DEFAULT_RECOVERABLE_ERRORS),
    )


@dataclass
class GlobalConfig:
    """Global orchestral configuration."""
    max_iterations: int = 3
    tmux_session_prefix: str = "orchestral"
    worker_command: str = DEFAULT_WORKER_COMMAND  # {prompt} = quoted prompt path
    settle_delay: float = 1.0        # Seconds to let worker artifacts land
    poll_interval: float = 1.0       # Seconds between watcher polls
    recovery_max_age_hours: int = 24
    auto_recover: bool = False
    auto_retry: AutoRetryConfig = field(default_factory=AutoRetryConfig)
    test_command: str = ""           # Fallback when the verifier writes no test-config.json
    test_timeout_ms: int = 600_000
    kill_session_on_exit: bool = False

    # Integrations (empty string = disabled)
    slack_webhook: str = ""          # or ORCHESTRAL_SLACK_WEBHOOK env var


@dataclass
class ProjectConfig:
    """Per-project configuration from orchestral.yaml. None = use global."""
    max_iterations: int | None = None
    tmux_session_prefix: str | None = None
    worker_command: str | None = None
    settle_delay: float | None = None
    poll_interval: float | None = None
    recovery_max_age_hours: int | None = None
    auto_recover: bool | None = None
    auto_retry: dict | None = None
    test_command: str | None = None
    test_timeout_ms: int | None = None
    kill_session_on_exit: bool | None = None
    slack_webhook: str = ""


def _load_auto_retry(raw: dict | None, base: AutoRetryConfig | None = None) -> AutoRetryConfig:
    base = base or AutoRetryConfig()
    if not raw:
        return base
    return AutoRetryConfig(
        enabled=raw.get("enabled", base.enabled),
        max_attempts=raw.get("max_attempts", base.max_attempts),
        base_delay_ms=raw.get("base_delay_ms", base.base_delay_ms),
        max_delay_ms=raw.get("max_delay_ms", base.max_delay_ms),
        backoff_multiplier=raw.get("backoff_multiplier", base.backoff_multiplier),
        recoverable_errors=raw.get("recoverable_errors", list(base.recoverable_errors)),
    )


def default_global_config_path() -> Path:
    return Path.home() / ".orchestral" / "config.yaml"


def load_global_config(config_path: str | Path | None = None) -> GlobalConfig:
    """Load global config from config.yaml."""
    if config_path is None:
        config_path = default_global_config_path()

    config_path = Path(config_path)
    if not config_path.exists():
        return GlobalConfig()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    return GlobalConfig(
        max_iterations=raw.get("max_iterations", GlobalConfig.max_iterations),
        tmux_session_prefix=raw.get("tmux_session_prefix", GlobalConfig.tmux_session_prefix),
        worker_command=raw.get("worker_command", GlobalConfig.worker_command),
        settle_delay=raw.get("settle_delay", GlobalConfig.settle_delay),
        poll_interval=raw.get("poll_interval", GlobalConfig.poll_interval),
        recovery_max_age_hours=raw.get(
            "recovery_max_age_hours", GlobalConfig.recovery_max_age_hours
        ),
        auto_recover=raw.get("auto_recover", False),
        auto_retry=_load_auto_retry(raw.get("auto_retry")),
        test_command=raw.get("test_command", ""),
        test_timeout_ms=raw.get("test_timeout_ms", GlobalConfig.test_timeout_ms),
        kill_session_on_exit=raw.get("kill_session_on_exit", False),
        slack_webhook=raw.get("slack_webhook", ""),
    )


def load_project_config(project_dir: str | Path) -> ProjectConfig:
    """Load per-project config from orchestral.yaml."""
    config_path = Path(project_dir) / "orchestral.yaml"
    if not config_path.exists():
        return ProjectConfig()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    return ProjectConfig(
        max_iterations=raw.get("max_iterations"),
        tmux_session_prefix=raw.get("tmux_session_prefix"),
        worker_command=raw.get("worker_command"),
        settle_delay=raw.get("settle_delay"),
        poll_interval=raw.get("poll_interval"),
        recovery_max_age_hours=raw.get("recovery_max_age_hours"),
        auto_recover=raw.get("auto_recover"),
        auto_retry=raw.get("auto_retry"),
        test_command=raw.get("test_command"),
        test_timeout_ms=raw.get("test_timeout_ms"),
        kill_session_on_exit=raw.get("kill_session_on_exit"),
        slack_webhook=raw.get("slack_webhook", ""),
    )


def _pick(project_value, global_value):
    return global_value if project_value is None else project_value


def resolve_max_iterations(project: ProjectConfig, global_cfg: GlobalConfig) -> int:
    return _pick(project.max_iterations, global_cfg.max_iterations)


def resolve_session_prefix(project: ProjectConfig, global_cfg: GlobalConfig) -> str:
    return _pick(project.tmux_session_prefix, global_cfg.tmux_session_prefix)


def resolve_worker_command(project: ProjectConfig, global_cfg: GlobalConfig) -> str:
    return _pick(project.worker_command, global_cfg.worker_command)


def resolve_settle_delay(project: ProjectConfig, global_cfg: GlobalConfig) -> float:
    return _pick(project.settle_delay, global_cfg.settle_delay)


def resolve_poll_interval(project: ProjectConfig, global_cfg: GlobalConfig) -> float:
    return _pick(project.poll_interval, global_cfg.poll_interval)


def resolve_recovery_max_age_hours(project: ProjectConfig, global_cfg: GlobalConfig) -> int:
    return _pick(project.recovery_max_age_hours, global_cfg.recovery_max_age_hours)


def resolve_auto_recover(project: ProjectConfig, global_cfg: GlobalConfig) -> bool:
    return _pick(project.auto_recover, global_cfg.auto_recover)


def resolve_test_command(project: ProjectConfig, global_cfg: GlobalConfig) -> str:
    return _pick(project.test_command, global_cfg.test_command)


def resolve_test_timeout_ms(project: ProjectConfig, global_cfg: GlobalConfig) -> int:
    return _pick(project.test_timeout_ms, global_cfg.test_timeout_ms)


def resolve_kill_session_on_exit(project: ProjectConfig, global_cfg: GlobalConfig) -> bool:
    return _pick(project.kill_session_on_exit, global_cfg.kill_session_on_exit)


def resolve_auto_retry(project: ProjectConfig, global_cfg: GlobalConfig) -> AutoRetryConfig:
    """Project keys override individual global auto_retry keys."""
    return _load_auto_retry(project.auto_retry, global_cfg.auto_retry)


def resolve_slack_webhook(project: ProjectConfig, global_cfg: GlobalConfig) -> str:
    """Project > global > environment."""
    return (
        project.slack_webhook
        or global_cfg.slack_webhook
        or os.environ.get("ORCHESTRAL_SLACK_WEBHOOK", "")
    )


def write_default_project_config(project_dir: str | Path) -> Path:
    """Write a commented orchestral.yaml if none exists. Returns its path."""
    path = Path(project_dir) / "orchestral.yaml"
    if path.exists():
        return path
    defaults = GlobalConfig()
    content = {
        "max_iterations": defaults.max_iterations,
        "tmux_session_prefix": defaults.tmux_session_prefix,
        "auto_retry": {
            "enabled": defaults.auto_retry.enabled,
            "max_attempts": defaults.auto_retry.max_attempts,
        },
    }
    path.write_text(
        "# orchestral project configuration\n"
        + yaml.safe_dump(content, default_flow_style=False, sort_keys=False)
    )
    return path
