from __future__ import annotations

from pathlib import Path

import pytest

from conductor.core.errors import TaskNotFound
from conductor.core.transcript import Transcript
from conductor.core.types import Task, TaskStatus, ToolCall, Transition
from conductor.runtime.store import TaskStore


def _task(task_id: str = "t1") -> Task:
    task = Task(task_id=task_id, goal="do it", workspace="/tmp/ws", created_ts=1.0, updated_ts=2.0)
    task.status = TaskStatus.AWAITING_TOOL_APPROVAL
    task.awaiting = ToolCall(id="c1", name="execute_command", arguments={"command": "ls"})
    task.pending_calls = [task.awaiting]
    task.transitions.append(Transition(source="idle", target="running", ts=1.5, reason="started"))
    task.usage.add(10, 5)
    task.last_error = {"kind": "RateLimited", "message": "slow"}
    return task


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "tasks")
    transcript = Transcript()
    transcript.append_text("system", "sys")
    transcript.append_call(ToolCall(id="c1", name="execute_command", arguments={"command": "ls"}))

    store.save(_task(), transcript)
    task, loaded = store.load("t1")

    assert task.status is TaskStatus.AWAITING_TOOL_APPROVAL
    assert task.awaiting == ToolCall(id="c1", name="execute_command", arguments={"command": "ls"})
    assert task.pending_calls == [task.awaiting]
    assert task.transitions[0].reason == "started"
    assert task.usage.total_tokens == 15
    assert task.last_error == {"kind": "RateLimited", "message": "slow"}
    assert loaded.seqs() == transcript.seqs()
    assert loaded.pending_call() is not None


def test_missing_task_raises(tmp_path: Path) -> None:
    with pytest.raises(TaskNotFound):
        TaskStore(tmp_path).load("missing")


def test_listing_skips_corrupt_files(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "tasks")
    transcript = Transcript()
    transcript.append_text("system", "sys")
    store.save(_task("good"), transcript)
    (tmp_path / "tasks" / "bad.json").write_text("{not json", encoding="utf-8")

    assert [task.task_id for task in store.list_tasks()] == ["good"]
    assert store.delete("good")
    assert not store.exists("good")
