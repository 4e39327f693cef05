from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest
from pydantic import BaseModel

from conductor.admin.trace_parser import parse_trace_file
from conductor.backends.fake import (
    FakeProvider,
    dropped_response,
    text_response,
    tool_call_response,
)
from conductor.config import EngineConfig
from conductor.core.errors import (
    InvalidGoal,
    InvalidState,
    ProviderClientError,
    TaskNotFound,
    WorkspaceBusy,
)
from conductor.core.types import TaskStatus
from conductor.runtime.controller import build_controller
from conductor.runtime.notify import BufferedSink, CallbackSink, FanoutSink
from conductor.tools.context import ToolContext


def _done(result: str = "done", call_id: str | None = None) -> list:
    return tool_call_response("attempt_completion", {"result": result}, call_id=call_id)


def _controller(tmp_path: Path, steps, sink=None, **changes):
    workspace = tmp_path / "ws"
    workspace.mkdir(exist_ok=True)
    config = EngineConfig(data_root=tmp_path / "data", retry_base_delay_s=0.0, **changes)
    provider = FakeProvider(steps=list(steps))
    controller = build_controller(workspace, config=config, sink=sink, provider=provider)
    return controller, provider


def _roles(controller, task_id: str) -> list[str]:
    return [turn.role for turn in controller.transcript(task_id)]


def _results(controller, task_id: str):
    return [turn.result for turn in controller.transcript(task_id) if turn.role == "tool_result"]


def test_write_file_then_complete(tmp_path: Path) -> None:
    sink = BufferedSink()
    controller, provider = _controller(
        tmp_path,
        [
            tool_call_response("write_file", {"path": "a.txt", "content": "hi"}, call_id="c1"),
            _done("wrote a.txt", call_id="c2"),
        ],
        sink=sink,
    )

    handle = controller.start("write a file")

    assert handle.wait(10) is TaskStatus.COMPLETED
    task = handle.task
    assert task.summary == "wrote a.txt"
    assert (tmp_path / "ws" / "a.txt").read_text(encoding="utf-8") == "hi"
    assert _roles(controller, task.task_id) == [
        "system",
        "user",
        "tool_call",
        "tool_result",
        "tool_call",
        "tool_result",
    ]
    assert len(provider.calls) == 2
    assert "write_file" in provider.calls[0]["tools"]
    assert controller.workspace_lock.owner() is None
    assert len(controller.list_checkpoints(task.task_id)) == 1
    assert [item.source for item in task.transitions] == ["idle", "running"]
    assert task.transitions[-1].target == "completed"

    events, _ = sink.events(task.task_id)
    kinds = [event.kind for event in events]
    assert kinds.count("toolCallStarted") == 2
    assert kinds.count("toolCallFinished") == 2
    assert kinds[-1] == "stateChanged"

    reloaded, _ = _controller(tmp_path, [])
    assert reloaded.get_task(task.task_id).status is TaskStatus.COMPLETED


def test_repeated_calls_are_blocked(tmp_path: Path) -> None:
    listing = tool_call_response("list_files", {"path": "."})
    controller, _ = _controller(tmp_path, [listing] * 4 + [_done()])

    handle = controller.start("look around")

    assert handle.wait(10) is TaskStatus.COMPLETED
    results = _results(controller, handle.task_id)
    assert [result.ok for result in results] == [True, True, True, False, True]
    assert results[3].error_kind == "RepetitionLimitExceeded"


def test_dropped_streams_are_retried_without_duplicates(tmp_path: Path) -> None:
    sink = BufferedSink()
    controller, provider = _controller(
        tmp_path,
        [
            dropped_response("partial", ConnectionResetError("connection reset by peer")),
            dropped_response("again"),
            _done(),
        ],
        sink=sink,
    )

    handle = controller.start("retry please")

    assert handle.wait(10) is TaskStatus.COMPLETED
    assert len(provider.calls) == 3
    assert _roles(controller, handle.task_id) == ["system", "user", "tool_call", "tool_result"]
    events, _ = sink.events(handle.task_id)
    warnings = [event.payload for event in events if event.kind == "warning"]
    assert [item["kind"] for item in warnings] == ["NetworkInterrupted", "NetworkInterrupted"]

    trace = parse_trace_file(tmp_path / "data" / "traces" / f"{handle.task_id}.jsonl")
    assert [item["kind"] for item in trace["retries"]] == ["NetworkInterrupted"] * 2


def test_auth_failure_is_not_retried(tmp_path: Path) -> None:
    controller, provider = _controller(
        tmp_path, [ProviderClientError("bad key", status_code=401)]
    )

    handle = controller.start("anything")

    assert handle.wait(10) is TaskStatus.FAILED
    assert handle.task.last_error == {"kind": "AuthInvalid", "message": "bad key"}
    assert len(provider.calls) == 1
    assert controller.workspace_lock.owner() is None


def test_cancel_interrupts_running_command(tmp_path: Path) -> None:
    started = threading.Event()

    def on_event(event) -> None:
        if event.kind == "toolCallStarted":
            started.set()

    controller, _ = _controller(
        tmp_path,
        [tool_call_response("execute_command", {"command": "sleep 5"}, call_id="c1")],
        sink=CallbackSink(on_event),
        auto_approve=True,
    )

    began = time.monotonic()
    handle = controller.start("sleep")
    assert started.wait(10)
    time.sleep(0.2)
    handle.cancel()

    assert handle.wait(10) is TaskStatus.ABORTED
    assert time.monotonic() - began < 5
    assert controller.workspace_lock.owner() is None
    assert controller.transcript(handle.task_id).pending_call() is None


def test_approval_and_wrong_call_id(tmp_path: Path) -> None:
    controller, _ = _controller(
        tmp_path,
        [
            tool_call_response("execute_command", {"command": "echo hi"}, call_id="c1"),
            _done(),
        ],
    )

    handle = controller.start("say hi")

    assert handle.wait(10) is TaskStatus.AWAITING_TOOL_APPROVAL
    assert handle.task.awaiting.id == "c1"
    assert controller.workspace_lock.held_by(handle.task_id)
    with pytest.raises(InvalidState):
        controller.approve_tool(handle.task_id, "c9", True)

    controller.approve_tool(handle.task_id, "c1", True)

    assert handle.wait(10) is TaskStatus.COMPLETED
    result = _results(controller, handle.task_id)[0]
    assert result.ok
    assert result.payload["stdout"].strip() == "hi"


def test_denied_tool_reports_feedback(tmp_path: Path) -> None:
    controller, provider = _controller(
        tmp_path,
        [
            tool_call_response("execute_command", {"command": "ls"}, call_id="c1"),
            _done(),
        ],
    )
    handle = controller.start("list")
    assert handle.wait(10) is TaskStatus.AWAITING_TOOL_APPROVAL

    controller.approve_tool(handle.task_id, "c1", False, "not now")

    assert handle.wait(10) is TaskStatus.COMPLETED
    denied = _results(controller, handle.task_id)[0]
    assert denied.error_kind == "ToolDenied"
    assert denied.message == "the user denied this tool call: not now"
    assert len(provider.calls) == 2


def test_followup_question_receives_answer(tmp_path: Path) -> None:
    sink = BufferedSink()
    controller, _ = _controller(
        tmp_path,
        [
            tool_call_response("ask_followup_question", {"question": "Which file?"}, call_id="q1"),
            _done(),
        ],
        sink=sink,
    )
    handle = controller.start("edit something")
    assert handle.wait(10) is TaskStatus.AWAITING_USER_INPUT

    events, _ = sink.events(handle.task_id)
    awaiting = [event.payload for event in events if event.kind == "awaitingInput"]
    assert awaiting[-1]["kind"] == "question"
    assert awaiting[-1]["question"] == "Which file?"

    controller.provide_input(handle.task_id, "notes.txt")

    assert handle.wait(10) is TaskStatus.COMPLETED
    answer = _results(controller, handle.task_id)[0]
    assert answer.tool_call_id == "q1"
    assert answer.payload == {"answer": "notes.txt"}


def test_mistake_limit_asks_for_guidance(tmp_path: Path) -> None:
    chatter = text_response("let me think")
    controller, provider = _controller(tmp_path, [chatter, chatter, chatter, _done()])

    handle = controller.start("do it")

    assert handle.wait(10) is TaskStatus.AWAITING_USER_INPUT
    assert handle.task.awaiting is None
    assert handle.task.consecutive_mistakes == 3
    assert len(provider.calls) == 3

    controller.provide_input(handle.task_id, "just finish")

    assert handle.wait(10) is TaskStatus.COMPLETED
    texts = [turn.text for turn in controller.transcript(handle.task_id) if turn.role == "user"]
    assert "just finish" in texts


def test_resume_after_restart_while_awaiting(tmp_path: Path) -> None:
    first, _ = _controller(
        tmp_path,
        [tool_call_response("execute_command", {"command": "echo hi"}, call_id="c1")],
    )
    handle = first.start("say hi")
    assert handle.wait(10) is TaskStatus.AWAITING_TOOL_APPROVAL

    second, provider = _controller(tmp_path, [_done()])
    resumed = second.resume(handle.task_id)
    assert resumed.status is TaskStatus.AWAITING_TOOL_APPROVAL

    second.approve_tool(handle.task_id, "c1", True)

    assert resumed.wait(10) is TaskStatus.COMPLETED
    assert _results(second, handle.task_id)[0].ok
    assert len(provider.calls) == 1


def test_resume_from_checkpoint_restores_workspace(tmp_path: Path) -> None:
    controller, _ = _controller(
        tmp_path,
        [
            tool_call_response("write_file", {"path": "a.txt", "content": "hi"}),
            _done(),
            _done("nothing to do"),
        ],
    )
    handle = controller.start("write")
    assert handle.wait(10) is TaskStatus.COMPLETED
    (checkpoint,) = controller.list_checkpoints(handle.task_id)

    changes = controller.diff_checkpoints(handle.task_id, checkpoint.checkpoint_id)
    assert changes.added == ["a.txt"]

    controller.resume(handle.task_id, checkpoint.checkpoint_id)

    assert handle.wait(10) is TaskStatus.COMPLETED
    assert not (tmp_path / "ws" / "a.txt").exists()
    assert handle.task.summary == "nothing to do"


def test_contract_errors(tmp_path: Path) -> None:
    controller, _ = _controller(
        tmp_path,
        [tool_call_response("execute_command", {"command": "ls"}, call_id="c1")],
    )
    with pytest.raises(InvalidGoal):
        controller.start("   ")
    with pytest.raises(TaskNotFound):
        controller.get_task("missing")

    handle = controller.start("list")
    assert handle.wait(10) is TaskStatus.AWAITING_TOOL_APPROVAL
    with pytest.raises(WorkspaceBusy):
        controller.start("second task")
    with pytest.raises(InvalidState):
        controller.provide_input(handle.task_id, "hello")
    with pytest.raises(InvalidState):
        controller.purge(handle.task_id)

    controller.cancel(handle.task_id)

    assert handle.status is TaskStatus.ABORTED
    assert controller.workspace_lock.owner() is None
    with pytest.raises(InvalidState):
        controller.approve_tool(handle.task_id, "c1", True)

    controller.purge(handle.task_id)
    with pytest.raises(TaskNotFound):
        controller.get_task(handle.task_id)


def test_failed_start_releases_the_workspace(tmp_path: Path, monkeypatch) -> None:
    controller, _ = _controller(tmp_path, [_done()])

    def broken_prompt(name: str, **values) -> str:
        raise OSError(f"prompt {name} is unreadable")

    with monkeypatch.context() as patch:
        patch.setattr("conductor.runtime.controller.get_system_prompt", broken_prompt)
        with pytest.raises(OSError):
            controller.start("anything")

    assert controller.workspace_lock.owner() is None
    assert controller.list_tasks() == []
    handle = controller.start("anything")
    assert handle.wait(10) is TaskStatus.COMPLETED


def test_sinks_can_be_combined(tmp_path: Path) -> None:
    seen: list[str] = []
    buffer = BufferedSink()
    sink = FanoutSink(buffer, CallbackSink(lambda event: seen.append(event.kind)))
    controller, _ = _controller(tmp_path, [_done()], sink=sink)

    handle = controller.start("finish")

    assert handle.wait(10) is TaskStatus.COMPLETED
    events, cursor = buffer.events(handle.task_id)
    assert [event.kind for event in events] == seen
    assert cursor == len(seen)


class _OverwriteArgs(BaseModel):
    path: str


def test_cancel_rolls_back_mutating_tool(tmp_path: Path) -> None:
    started = threading.Event()

    def overwrite_and_wait(args: _OverwriteArgs, context: ToolContext) -> dict:
        (context.root / args.path).write_text("changed", encoding="utf-8")
        started.set()
        context.cancel.wait(10)
        return {"path": args.path}

    controller, _ = _controller(
        tmp_path,
        [tool_call_response("overwrite_and_wait", {"path": "a.txt"}, call_id="c1")],
    )
    controller.registry.register(
        "overwrite_and_wait", overwrite_and_wait, args_model=_OverwriteArgs, mutating=True
    )
    target = tmp_path / "ws" / "a.txt"
    target.write_text("original", encoding="utf-8")

    handle = controller.start("overwrite")
    assert started.wait(10)
    assert target.read_text(encoding="utf-8") == "changed"
    handle.cancel()

    assert handle.wait(10) is TaskStatus.ABORTED
    assert target.read_text(encoding="utf-8") == "original"
    assert controller.list_checkpoints(handle.task_id) == []
    assert _roles(controller, handle.task_id) == ["system", "user"]
    assert controller.workspace_lock.owner() is None


def test_truncated_context_is_reported(tmp_path: Path) -> None:
    sink = BufferedSink()
    big = "x" * 40_000
    controller, provider = _controller(
        tmp_path,
        [
            tool_call_response("write_file", {"path": "a.txt", "content": big}),
            tool_call_response("write_file", {"path": "b.txt", "content": big}),
            _done(),
        ],
        sink=sink,
        max_input_tokens=17_000,
        reserved_output_tokens=0,
        keep_recent_turns=2,
    )
    provider.extend_purpose(
        "summarize", [ProviderClientError("summary backend down", status_code=500)]
    )

    handle = controller.start("write two files")

    assert handle.wait(10) is TaskStatus.COMPLETED
    assert handle.task.warnings == ["DegradedContext"]
    assert [call["purpose"] for call in provider.calls] == [
        "task",
        "task",
        "summarize",
        "task",
    ]
    written = [
        turn.call.arguments["path"]
        for turn in controller.transcript(handle.task_id)
        if turn.role == "tool_call" and turn.call.name == "write_file"
    ]
    assert written == ["b.txt"]
    events, _ = sink.events(handle.task_id)
    warnings = [event.payload for event in events if event.kind == "warning"]
    assert [item["kind"] for item in warnings] == ["DegradedContext"]
    assert warnings[0]["removed_turns"] == 2


def test_context_overflow_fails_without_touching_transcript(tmp_path: Path) -> None:
    controller, provider = _controller(
        tmp_path, [_done()], max_input_tokens=50, reserved_output_tokens=0
    )

    handle = controller.start("too big")

    assert handle.wait(10) is TaskStatus.FAILED
    assert handle.task.last_error["kind"] == "ContextOverflow"
    assert _roles(controller, handle.task_id) == ["system", "user"]
    assert provider.calls == []
    assert controller.workspace_lock.owner() is None
