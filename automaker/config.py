from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

CONFIG_ENV_VAR = "AUTOMAKER_CONFIG"


@dataclass
class AutoModeConfig:
    max_concurrency: int = 3
    poll_interval_seconds: float = 5.0
    use_worktrees: bool = False
    max_resume_retries: int = 3
    engine_timeout_seconds: float | None = None
    feature_logs: bool = False


@dataclass
class ClaudeCodeConfig:
    command: str = "claude"
    skip_permissions: bool = True
    verbose: bool = True
    model: str | None = None


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3008
    shutdown_grace_seconds: float = 10.0


@dataclass
class AutomakerConfig:
    auto_mode: AutoModeConfig = field(default_factory=AutoModeConfig)
    claude_code: ClaudeCodeConfig = field(default_factory=ClaudeCodeConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log_level: str = "INFO"


_config: AutomakerConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def default_config_path() -> Path:
    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        return Path(env)
    return Path.home() / ".automaker" / "config.yaml"


def _parse_config(raw: dict) -> AutomakerConfig:
    auto_raw = raw.get("auto_mode") or {}
    cc_raw = raw.get("claude_code") or {}
    server_raw = raw.get("server") or {}
    auto_mode = AutoModeConfig(**auto_raw)
    if auto_mode.max_concurrency < 1:
        raise ValueError(f"auto_mode.max_concurrency must be positive, got {auto_mode.max_concurrency}")
    return AutomakerConfig(
        auto_mode=auto_mode,
        claude_code=ClaudeCodeConfig(**cc_raw),
        server=ServerConfig(**server_raw),
        log_level=raw.get("log_level", "INFO"),
    )


def load_config(path: str | Path | None = None) -> AutomakerConfig:
    global _config, _config_path, _config_mtime
    path = Path(path) if path is not None else default_config_path()
    if not path.exists():
        _config = AutomakerConfig()
        _config_path = None
        _config_mtime = 0.0
        return _config
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    _config = _parse_config(raw)
    _config_path = path
    _config_mtime = path.stat().st_mtime
    return _config


def get_config() -> AutomakerConfig:
    if _config is None:
        return load_config()
    if _config_path is not None:
        try:
            current_mtime = _config_path.stat().st_mtime
            if current_mtime != _config_mtime:
                return load_config(_config_path)
        except OSError:
            pass
    return _config
