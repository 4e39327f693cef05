from __future__ import annotations

from pathlib import Path

import pytest

from conductor.tools.sandbox import (
    confine_path,
    resolve_under_root,
    split_shell_cmd,
    validate_shell_cmd,
)


def test_resolve_under_root_denies_escape(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()

    assert resolve_under_root(root, "../outside") is None
    assert resolve_under_root(root, str(outside)) is None
    assert resolve_under_root(root, "a/../b.txt") == root.resolve() / "b.txt"

    escape_symlink = root / "link"
    escape_symlink.symlink_to(outside)
    assert resolve_under_root(root, "link/target.txt") is None


def test_confine_path_raises(tmp_path: Path) -> None:
    assert confine_path(tmp_path, "") == tmp_path.resolve()
    with pytest.raises(ValueError):
        confine_path(tmp_path, "../x")
    with pytest.raises(ValueError):
        confine_path(tmp_path, "bad\x00name")


def test_validate_shell_cmd_rules() -> None:
    allow = ["echo", "ls"]
    deny = ["rm", "sudo"]

    ok, reason = validate_shell_cmd("echo hi", allow, deny)
    assert ok
    assert reason is None

    ok, reason = validate_shell_cmd("rm -rf /", allow, deny)
    assert not ok
    assert reason is not None

    ok, reason = validate_shell_cmd("bash -c 'echo hi'", allow, deny)
    assert not ok
    assert reason is not None


def test_split_shell_cmd_rejects_metacharacters() -> None:
    allow = ["echo", "ls"]
    for command in ("echo hi | ls", "echo $HOME", "ls > out", "echo a; ls", "echo `id`"):
        argv, reason = split_shell_cmd(command, allow, [])
        assert argv is None
        assert reason == "shell metacharacters are not allowed"

    argv, reason = split_shell_cmd("echo 'a;b'", allow, [])
    assert argv == ["echo", "a;b"]
    assert reason is None

    assert split_shell_cmd("echo 'open", allow, [])[1] == "failed to parse command"
    assert split_shell_cmd("   ", allow, [])[1] == "empty command"
