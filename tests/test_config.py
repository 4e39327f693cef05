from __future__ import annotations

import json
from pathlib import Path

from conductor.config import load_config, load_settings, save_settings


def test_environment_overrides_defaults(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CONDUCTOR_BACKEND", "openai")
    monkeypatch.setenv("CONDUCTOR_MAX_INPUT_TOKENS", "4096")
    monkeypatch.setenv("CONDUCTOR_AUTO_APPROVE", "yes")
    monkeypatch.setenv("CONDUCTOR_RETRY_BASE_DELAY_S", "not-a-number")

    config = load_config(tmp_path)

    assert config.backend == "openai"
    assert config.max_input_tokens == 4096
    assert config.auto_approve is True
    assert config.retry_base_delay_s == 1.0
    assert config.data_root == tmp_path.resolve()
    assert config.tasks_dir == tmp_path.resolve() / "tasks"


def test_settings_file_overlays_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CONDUCTOR_MAX_CHECKPOINTS", "5")
    (tmp_path / "conductor.json").write_text(
        json.dumps({"max_checkpoints": 7, "retry_max_delay_s": 2, "unknown": 1, "backend": 3}),
        encoding="utf-8",
    )

    config = load_config(tmp_path)

    assert config.max_checkpoints == 7
    assert config.retry_max_delay_s == 2.0
    assert config.backend == "fake"


def test_malformed_settings_file_is_ignored(tmp_path: Path) -> None:
    (tmp_path / "conductor.json").write_text("{oops", encoding="utf-8")
    assert load_settings(tmp_path) == {}


def test_save_settings_drops_unknown_keys(tmp_path: Path) -> None:
    save_settings(tmp_path, {"auto_approve": True, "bogus": 1})
    assert load_settings(tmp_path) == {"auto_approve": True}
