from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.recall/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "api_url": "RECALL_API_URL",
    "api_token": "RECALL_API_TOKEN",
    "user_email": "RECALL_USER_EMAIL",
    "memory_dir": "RECALL_MEMORY_DIR",
    "window_size": "RECALL_WINDOW_SIZE",
    "summarizer": "RECALL_SUMMARIZER",
    "summarizer_model": "RECALL_SUMMARIZER_MODEL",
    "summarizer_api_key": "RECALL_SUMMARIZER_API_KEY",
    "http_timeout_s": "RECALL_HTTP_TIMEOUT_S",
    "http_retries": "RECALL_HTTP_RETRIES",
    "sync_max_attempts": "RECALL_SYNC_MAX_ATTEMPTS",
    "git_push": "RECALL_GIT_PUSH",
    "team_key": "RECALL_TEAM_KEY",
    "team_key_version": "RECALL_TEAM_KEY_VERSION",
    "state_db": "RECALL_STATE_DB",
    "log_path": "RECALL_LOG_PATH",
    "log_level": "RECALL_LOG_LEVEL",
}

_INT_KEYS = {"window_size", "http_retries", "sync_max_attempts", "team_key_version"}
_FLOAT_KEYS = {"http_timeout_s"}
_BOOL_KEYS = {"git_push"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("RECALL_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class RecallConfig:
    api_url: str = "https://api.recall.team"
    api_token: str | None = None
    user_email: str | None = None
    memory_dir: str = ".recall"
    window_size: int = 100
    # None = auto: "api" when an api token is configured, else "template".
    summarizer: str | None = None
    summarizer_model: str | None = None
    summarizer_api_key: str | None = None
    http_timeout_s: float = 15.0
    http_retries: int = 1
    sync_max_attempts: int = 3
    git_push: bool = True
    # Static base64 team key for self-hosted teams; skips key custody.
    team_key: str | None = None
    team_key_version: int = 1
    state_db: str = "~/.recall/state.sqlite"
    log_path: str | None = "~/.recall/recall.log"
    log_level: str = "INFO"

    @property
    def encryption_configured(self) -> bool:
        return bool(self.team_key or self.api_token)


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> RecallConfig:
    cfg = RecallConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: RecallConfig, data: dict[str, Any]) -> RecallConfig:
    for key, value in data.items():
        if not hasattr(cfg, key) or key == "encryption_configured":
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key in _BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        setattr(cfg, key, value)
    return cfg
