from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from conductor.core.errors import WorkspaceBusy
from conductor.runtime.locks import WorkspaceLock


def test_second_task_cannot_take_a_held_workspace(tmp_path: Path) -> None:
    lock = WorkspaceLock(tmp_path / "locks", tmp_path / "ws")
    lock.acquire("task-a")
    lock.acquire("task-a")
    with pytest.raises(WorkspaceBusy):
        lock.acquire("task-b")

    assert lock.held_by("task-a")
    assert not lock.release("task-b")
    assert lock.release("task-a")
    assert lock.owner() is None

    lock.acquire("task-b")
    assert lock.held_by("task-b")


def test_lock_from_dead_process_is_reclaimed(tmp_path: Path) -> None:
    lock = WorkspaceLock(tmp_path / "locks", tmp_path / "ws")
    lock.path.parent.mkdir(parents=True)
    lock.path.write_text(
        json.dumps({"task_id": "ghost", "pid": 999_999_999, "workspace": str(lock.workspace)}),
        encoding="utf-8",
    )

    lock.acquire("task-a")

    owner = lock.owner()
    assert owner is not None and owner.task_id == "task-a"


def test_different_workspaces_do_not_conflict(tmp_path: Path) -> None:
    first = WorkspaceLock(tmp_path / "locks", tmp_path / "one")
    second = WorkspaceLock(tmp_path / "locks", tmp_path / "two")
    first.acquire("a")
    second.acquire("b")
    assert first.path != second.path


def test_concurrent_acquire_has_a_single_winner(tmp_path: Path) -> None:
    locks = [WorkspaceLock(tmp_path / "locks", tmp_path / "ws") for _ in range(8)]
    barrier = threading.Barrier(len(locks))
    winners: list[int] = []

    def contend(index: int) -> None:
        barrier.wait()
        try:
            locks[index].acquire(f"task-{index}")
        except WorkspaceBusy:
            return
        winners.append(index)

    threads = [threading.Thread(target=contend, args=(index,)) for index in range(len(locks))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert len(winners) == 1
    assert locks[0].held_by(f"task-{winners[0]}")
    assert list((tmp_path / "locks").iterdir()) == [locks[0].path]
