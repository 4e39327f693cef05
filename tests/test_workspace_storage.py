from __future__ import annotations

from pathlib import Path

import pytest

from conductor.tools.workspace import WorkspaceStorage


def _storage(tmp_path: Path) -> tuple[Path, WorkspaceStorage]:
    root = tmp_path / "ws"
    root.mkdir()
    return root, WorkspaceStorage(root, tmp_path / "snapshots")


def test_snapshot_and_restore_reverts_every_change(tmp_path: Path) -> None:
    root, storage = _storage(tmp_path)
    (root / "keep.txt").write_text("keep", encoding="utf-8")
    (root / "edit.txt").write_text("before", encoding="utf-8")
    (root / "gone").mkdir()
    (root / "gone" / "old.txt").write_text("old", encoding="utf-8")
    handle = storage.snapshot()

    (root / "edit.txt").write_text("after", encoding="utf-8")
    (root / "gone" / "old.txt").unlink()
    (root / "new").mkdir()
    (root / "new" / "fresh.txt").write_text("fresh", encoding="utf-8")

    changes = storage.restore(handle)

    assert changes.modified == ["edit.txt"]
    assert changes.added == ["gone/old.txt"]
    assert changes.removed == ["new/fresh.txt"]
    assert (root / "edit.txt").read_text(encoding="utf-8") == "before"
    assert (root / "gone" / "old.txt").read_text(encoding="utf-8") == "old"
    assert not (root / "new").exists()
    assert storage.diff(handle).empty


def test_diff_between_snapshots(tmp_path: Path) -> None:
    root, storage = _storage(tmp_path)
    (root / "a.txt").write_text("1", encoding="utf-8")
    first = storage.snapshot()
    (root / "a.txt").write_text("2", encoding="utf-8")
    (root / "b.txt").write_text("b", encoding="utf-8")
    second = storage.snapshot()

    changes = storage.diff(first, second)
    assert changes.added == ["b.txt"]
    assert changes.modified == ["a.txt"]
    assert changes.removed == []


def test_ignored_and_excluded_paths_are_not_captured(tmp_path: Path) -> None:
    root = tmp_path / "ws"
    (root / ".git").mkdir(parents=True)
    (root / ".git" / "HEAD").write_text("ref", encoding="utf-8")
    (root / "data").mkdir()
    (root / "data" / "state.json").write_text("{}", encoding="utf-8")
    (root / "src.py").write_text("print(1)", encoding="utf-8")
    storage = WorkspaceStorage(root, root / "data" / "snapshots", exclude=[root / "data"])

    handle = storage.snapshot()

    assert list(storage.manifest(handle)) == ["src.py"]


def test_identical_content_is_stored_once_and_gc_removes_orphans(tmp_path: Path) -> None:
    root, storage = _storage(tmp_path)
    (root / "one.txt").write_text("same", encoding="utf-8")
    (root / "two.txt").write_text("same", encoding="utf-8")
    first = storage.snapshot()
    assert len(list(storage.blob_dir.iterdir())) == 1

    (root / "one.txt").write_text("different", encoding="utf-8")
    second = storage.snapshot()
    assert len(list(storage.blob_dir.iterdir())) == 2

    storage.delete(second)
    assert storage.collect_garbage() == 1
    assert storage.handles() == [first]
    storage.restore(first)
    assert (root / "one.txt").read_text(encoding="utf-8") == "same"


def test_invalid_handles_are_rejected(tmp_path: Path) -> None:
    _, storage = _storage(tmp_path)
    with pytest.raises(ValueError):
        storage.manifest("../escape")
    with pytest.raises(KeyError):
        storage.manifest("missing")
