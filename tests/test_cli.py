from __future__ import annotations

import json

import pytest

from conductor import cli


def _script(*steps: dict) -> str:
    return json.dumps(list(steps))


def _call(name: str, **arguments) -> dict:
    return {"tool_calls": [{"name": name, "arguments": arguments}]}


def _common(tmp_path) -> list[str]:
    return ["--workspace", str(tmp_path / "ws"), "--data-root", str(tmp_path / "data")]


def test_cli_smoke(capsys, tmp_path) -> None:
    exit_code = cli.main(["smoke", *_common(tmp_path)])

    captured = capsys.readouterr()
    assert exit_code == 0
    assert (tmp_path / "ws" / "SMOKE.txt").read_text(encoding="utf-8") == "smoke run\n"
    assert "Inspecting the workspace." in captured.out
    assert "Wrote SMOKE.txt." in captured.out


def test_cli_run_with_scripted_backend(monkeypatch, capsys, tmp_path) -> None:
    (tmp_path / "ws").mkdir()
    monkeypatch.setenv(
        "CONDUCTOR_FAKE_SCRIPT",
        _script(
            {"text": "Writing the file."},
            _call("write_file", path="a.txt", content="x"),
            _call("attempt_completion", result="created a.txt"),
        ),
    )

    exit_code = cli.main(
        ["run", "create a.txt", *_common(tmp_path), "--backend", "fake", "--no-input"]
    )

    captured = capsys.readouterr()
    assert exit_code == 0
    assert (tmp_path / "ws" / "a.txt").read_text(encoding="utf-8") == "x"
    assert "created a.txt" in captured.out


def test_cli_suspends_then_resumes(monkeypatch, capsys, tmp_path) -> None:
    (tmp_path / "ws").mkdir()
    monkeypatch.setenv("CONDUCTOR_FAKE_SCRIPT", _script(_call("execute_command", command="ls")))

    exit_code = cli.main(["run", "list files", *_common(tmp_path), "--no-input"])
    assert exit_code == 3
    capsys.readouterr()

    assert cli.main(["tasks", *_common(tmp_path), "--json"]) == 0
    (row,) = json.loads(capsys.readouterr().out)
    assert row["status"] == "awaiting_tool_approval"

    monkeypatch.setenv(
        "CONDUCTOR_FAKE_SCRIPT", _script(_call("attempt_completion", result="listed"))
    )
    monkeypatch.setattr("builtins.input", lambda prompt="": "y")

    exit_code = cli.main(["resume", row["task_id"], *_common(tmp_path)])

    assert exit_code == 0
    assert "listed" in capsys.readouterr().out

    assert cli.main(["trace", row["task_id"], "--data-root", str(tmp_path / "data")]) == 0
    out = capsys.readouterr().out
    assert "final state: completed" in out
    assert "tool execute_command" in out


def test_cli_failed_task_exit_code(monkeypatch, capsys, tmp_path) -> None:
    (tmp_path / "ws").mkdir()
    monkeypatch.setenv(
        "CONDUCTOR_FAKE_SCRIPT", _script({"error": {"status": 401, "message": "bad key"}})
    )

    exit_code = cli.main(["run", "anything", *_common(tmp_path), "--no-input"])

    assert exit_code == 1
    assert "AuthInvalid" in capsys.readouterr().out


def test_cli_engine_errors(capsys, tmp_path) -> None:
    assert cli.main(["checkpoints", "missing", *_common(tmp_path)]) == 2
    assert "TaskNotFound" in capsys.readouterr().err
    assert cli.main(["trace", "missing", "--data-root", str(tmp_path / "data")]) == 2


def test_cli_rejects_unknown_backend(tmp_path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["run", "goal", "--backend", "nope"])
    assert excinfo.value.code == 2
