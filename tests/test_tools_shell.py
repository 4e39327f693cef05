from __future__ import annotations

import threading
from pathlib import Path

import pytest

from conductor.core.errors import TaskCancelled
from conductor.tools.context import ToolContext
from conductor.tools.settings import ToolSettings
from conductor.tools.shell_tool import ExecuteCommandArgs, execute_command


def _context(root: Path) -> ToolContext:
    return ToolContext(root=root, settings=ToolSettings())


def test_shell_allows_echo(tmp_path: Path) -> None:
    result = execute_command(ExecuteCommandArgs(command="echo hi"), _context(tmp_path))
    assert "hi" in result["stdout"]
    assert result["returncode"] == 0


def test_shell_runs_in_workspace(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("", encoding="utf-8")
    result = execute_command(ExecuteCommandArgs(command="ls"), _context(tmp_path))
    assert "marker.txt" in result["stdout"]


def test_shell_denies_rm(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        execute_command(ExecuteCommandArgs(command="rm -rf /"), _context(tmp_path))
    with pytest.raises(ValueError):
        execute_command(ExecuteCommandArgs(command="echo hi && ls"), _context(tmp_path))


def test_shell_timeout(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        execute_command(ExecuteCommandArgs(command="sleep 2", timeout_s=0.1), _context(tmp_path))


def test_shell_cancel_kills_process(tmp_path: Path) -> None:
    context = _context(tmp_path)
    timer = threading.Timer(0.2, context.cancel.cancel)
    timer.start()
    try:
        with pytest.raises(TaskCancelled):
            execute_command(ExecuteCommandArgs(command="sleep 5"), context)
    finally:
        timer.cancel()
