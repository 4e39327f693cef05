from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "conductor.json"


@dataclass(frozen=True, slots=True)
class EngineConfig:
    data_root: Path = Path("data")
    backend: str = "fake"
    max_input_tokens: int = 128_000
    reserved_output_tokens: int = 8_192
    keep_recent_turns: int = 4
    repetition_threshold: int = 3
    max_consecutive_mistakes: int = 3
    max_checkpoints: int = 20
    retry_max_attempts: int = 3
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0
    tool_timeout_s: float = 120.0
    cancel_grace_s: float = 5.0
    auto_approve: bool = False
    admin_token: str | None = None
    log_level: str = "INFO"

    def replace(self, **changes: Any) -> "EngineConfig":
        return dataclasses.replace(self, **changes)

    @property
    def tasks_dir(self) -> Path:
        return self.data_root / "tasks"

    @property
    def checkpoints_dir(self) -> Path:
        return self.data_root / "checkpoints"

    @property
    def snapshots_dir(self) -> Path:
        return self.data_root / "snapshots"

    @property
    def traces_dir(self) -> Path:
        return self.data_root / "traces"

    @property
    def locks_dir(self) -> Path:
        return self.data_root / "locks"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("ignoring non-numeric %s=%r", name, raw)
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _from_env(data_root: Path | None) -> EngineConfig:
    defaults = EngineConfig()
    root = data_root or Path(os.getenv("CONDUCTOR_DATA_ROOT", str(defaults.data_root)))
    return EngineConfig(
        data_root=Path(root).resolve(),
        backend=os.getenv("CONDUCTOR_BACKEND", defaults.backend),
        max_input_tokens=_env_int("CONDUCTOR_MAX_INPUT_TOKENS", defaults.max_input_tokens),
        reserved_output_tokens=_env_int(
            "CONDUCTOR_RESERVED_OUTPUT_TOKENS", defaults.reserved_output_tokens
        ),
        keep_recent_turns=_env_int("CONDUCTOR_KEEP_RECENT_TURNS", defaults.keep_recent_turns),
        repetition_threshold=_env_int(
            "CONDUCTOR_REPETITION_THRESHOLD", defaults.repetition_threshold
        ),
        max_consecutive_mistakes=_env_int(
            "CONDUCTOR_MAX_CONSECUTIVE_MISTAKES", defaults.max_consecutive_mistakes
        ),
        max_checkpoints=_env_int("CONDUCTOR_MAX_CHECKPOINTS", defaults.max_checkpoints),
        retry_max_attempts=_env_int("CONDUCTOR_RETRY_MAX_ATTEMPTS", defaults.retry_max_attempts),
        retry_base_delay_s=_env_float("CONDUCTOR_RETRY_BASE_DELAY_S", defaults.retry_base_delay_s),
        retry_max_delay_s=_env_float("CONDUCTOR_RETRY_MAX_DELAY_S", defaults.retry_max_delay_s),
        tool_timeout_s=_env_float("CONDUCTOR_TOOL_TIMEOUT_S", defaults.tool_timeout_s),
        cancel_grace_s=_env_float("CONDUCTOR_CANCEL_GRACE_S", defaults.cancel_grace_s),
        auto_approve=_env_bool("CONDUCTOR_AUTO_APPROVE", defaults.auto_approve),
        admin_token=os.getenv("CONDUCTOR_ADMIN_TOKEN") or None,
        log_level=os.getenv("CONDUCTOR_LOG_LEVEL", defaults.log_level).upper(),
    )


_FIELD_TYPES: dict[str, type] = {
    "backend": str,
    "max_input_tokens": int,
    "reserved_output_tokens": int,
    "keep_recent_turns": int,
    "repetition_threshold": int,
    "max_consecutive_mistakes": int,
    "max_checkpoints": int,
    "retry_max_attempts": int,
    "retry_base_delay_s": float,
    "retry_max_delay_s": float,
    "tool_timeout_s": float,
    "cancel_grace_s": float,
    "auto_approve": bool,
    "log_level": str,
}


def load_settings(data_root: Path) -> dict[str, Any]:
    """Read overrides from ``<data_root>/conductor.json``.

    Unknown keys and values of the wrong type are ignored, as is a file that
    is not valid JSON.
    """
    path = data_root / SETTINGS_FILENAME
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("ignoring unreadable settings file %s", path)
        return {}
    if not isinstance(payload, dict):
        return {}
    settings: dict[str, Any] = {}
    for key, value in payload.items():
        expected = _FIELD_TYPES.get(key)
        if expected is None:
            continue
        if expected is bool:
            if isinstance(value, bool):
                settings[key] = value
        elif expected is float:
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                settings[key] = float(value)
        elif isinstance(value, expected) and not isinstance(value, bool):
            settings[key] = value
    return settings


def save_settings(data_root: Path, settings: dict[str, Any]) -> Path:
    path = data_root / SETTINGS_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {key: value for key, value in settings.items() if key in _FIELD_TYPES}
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


def load_config(data_root: Path | None = None) -> EngineConfig:
    config = _from_env(data_root)
    overrides = load_settings(config.data_root)
    if overrides:
        config = config.replace(**overrides)
    return config
