from __future__ import annotations

import argparse
import json
import logging
import sys
import tempfile
from dataclasses import asdict
from pathlib import Path
from typing import Any

from conductor.admin.trace_parser import parse_trace_file
from conductor.backends import get_backend, list_backends
from conductor.backends.fake import FakeProvider, tool_call_response
from conductor.config import EngineConfig, load_config
from conductor.core.errors import EngineError
from conductor.core.types import TaskStatus
from conductor.runtime.controller import TaskController, TaskHandle, build_controller
from conductor.runtime.notify import AWAITING_INPUT, TEXT_DELTA, WARNING, HostEvent

_EXIT_CODES = {
    TaskStatus.COMPLETED: 0,
    TaskStatus.FAILED: 1,
    TaskStatus.ABORTED: 130,
}


class ConsoleSink:
    """Streams model text and warnings to the terminal."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stdout

    def publish(self, event: HostEvent) -> None:
        if event.kind == TEXT_DELTA:
            self.stream.write(str(event.payload.get("text", "")))
            self.stream.flush()
        elif event.kind == WARNING:
            self.stream.write(f"\n[warning] {event.payload.get('message', '')}\n")
        elif event.kind == AWAITING_INPUT:
            self.stream.write("\n")
        self.stream.flush()


def _config_from_args(args: argparse.Namespace) -> EngineConfig:
    config = load_config(args.data_root)
    changes: dict[str, Any] = {}
    if getattr(args, "backend", None):
        changes["backend"] = args.backend
    if getattr(args, "auto_approve", False):
        changes["auto_approve"] = True
    return config.replace(**changes) if changes else config


def _backend_kwargs(args: argparse.Namespace) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if getattr(args, "model", None):
        kwargs["model"] = args.model
    if getattr(args, "base_url", None):
        kwargs["base_url"] = args.base_url
    return kwargs


def _build(args: argparse.Namespace, provider: Any | None = None) -> TaskController:
    config = _config_from_args(args)
    sink = ConsoleSink()
    if provider is None:
        provider = get_backend(config.backend, **_backend_kwargs(args))
    return build_controller(Path(args.workspace), config=config, sink=sink, provider=provider)


def _prompt_approval(controller: TaskController, handle: TaskHandle) -> None:
    call = handle.task.awaiting
    if call is None:
        return
    arguments = json.dumps(call.arguments, ensure_ascii=False)
    answer = input(f"Allow {call.name} {arguments}? [y/N] ").strip().lower()
    if answer in {"y", "yes"}:
        controller.approve_tool(handle.task_id, call.id, True)
        return
    feedback = input("feedback (optional)> ").strip()
    controller.approve_tool(handle.task_id, call.id, False, feedback or None)


def _prompt_reply(controller: TaskController, handle: TaskHandle) -> None:
    call = handle.task.awaiting
    if call is not None:
        question = call.arguments.get("question", "")
        print(f"? {question}")
    else:
        print("The task is stuck and needs guidance.")
    reply = input("reply> ")
    controller.provide_input(handle.task_id, reply)


def _drive(controller: TaskController, handle: TaskHandle, interactive: bool = True) -> int:
    try:
        while True:
            status = handle.wait(0.5)
            if status.terminal:
                break
            if not status.awaiting:
                continue
            if not interactive:
                print(f"\ntask {handle.task_id} is {status.value}")
                return 3
            if status is TaskStatus.AWAITING_TOOL_APPROVAL:
                _prompt_approval(controller, handle)
            else:
                _prompt_reply(controller, handle)
    except (KeyboardInterrupt, EOFError):
        handle.cancel()
        handle.wait()
    task = handle.task
    print()
    if task.summary:
        print(task.summary)
    if task.last_error:
        print(f"error: {task.last_error.get('kind')}: {task.last_error.get('message')}")
    print(f"task {task.task_id} {task.status.value}")
    return _EXIT_CODES.get(task.status, 1)


def _cmd_run(args: argparse.Namespace) -> int:
    controller = _build(args)
    try:
        handle = controller.start(args.goal)
        return _drive(controller, handle, interactive=not args.no_input)
    except EngineError as exc:
        print(f"{exc.kind}: {exc.message}", file=sys.stderr)
        return 2
    finally:
        controller.close()


def _cmd_resume(args: argparse.Namespace) -> int:
    controller = _build(args)
    try:
        handle = controller.resume(args.task_id, args.checkpoint)
        return _drive(controller, handle, interactive=not args.no_input)
    except EngineError as exc:
        print(f"{exc.kind}: {exc.message}", file=sys.stderr)
        return 2
    finally:
        controller.close()


def _cmd_tasks(args: argparse.Namespace) -> int:
    controller = _build(args)
    tasks = controller.list_tasks()
    if args.json:
        print(json.dumps([_task_row(task) for task in tasks], indent=2))
        return 0
    if not tasks:
        print("no tasks")
    for task in tasks:
        print(f"{task.task_id}  {task.status.value:<24} {task.goal}")
    return 0


def _task_row(task) -> dict[str, Any]:
    return {"task_id": task.task_id, "status": task.status.value, "goal": task.goal}


def _cmd_checkpoints(args: argparse.Namespace) -> int:
    controller = _build(args)
    try:
        if args.capture:
            checkpoint = controller.capture_checkpoint(args.task_id, args.label)
            print(f"captured {checkpoint.checkpoint_id}")
            return 0
        checkpoints = controller.list_checkpoints(args.task_id)
    except EngineError as exc:
        print(f"{exc.kind}: {exc.message}", file=sys.stderr)
        return 2
    if not checkpoints:
        print("no checkpoints")
    for checkpoint in checkpoints:
        label = checkpoint.label or ""
        print(f"{checkpoint.checkpoint_id}  pos={checkpoint.sequence_position:<5} {label}")
    return 0


def _cmd_diff(args: argparse.Namespace) -> int:
    controller = _build(args)
    try:
        changes = controller.diff_checkpoints(args.task_id, args.a, args.b)
    except EngineError as exc:
        print(f"{exc.kind}: {exc.message}", file=sys.stderr)
        return 2
    if args.json:
        print(json.dumps(asdict(changes), indent=2))
        return 0
    for prefix, paths in (("A", changes.added), ("M", changes.modified), ("D", changes.removed)):
        for path in paths:
            print(f"{prefix} {path}")
    return 0


def _render_trace(parsed: dict[str, Any]) -> str:
    lines = [f"final state: {parsed.get('final_state')}"]
    for state in parsed["states"]:
        lines.append(f"state {state['from']} -> {state['to']} ({state['reason']})")
    for request in parsed["requests"]:
        outcome = request.get("outcome") or "open"
        detail = request.get("finish_reason") or request.get("error_kind") or ""
        lines.append(f"request attempt={request.get('attempt')} {outcome} {detail}".rstrip())
    for call in parsed["tool_calls"]:
        status = "ok" if call["ok"] else call.get("error_kind") or "pending"
        lines.append(f"tool {call['tool']} [{call['call_id']}] {status}")
    return "\n".join(lines)


def _cmd_trace(args: argparse.Namespace) -> int:
    config = load_config(args.data_root)
    path = config.traces_dir / f"{args.task_id}.jsonl"
    if not path.exists():
        print(f"no trace for {args.task_id}", file=sys.stderr)
        return 2
    parsed = parse_trace_file(path)
    if args.json:
        print(json.dumps(parsed, indent=2, default=str))
    else:
        print(_render_trace(parsed))
    return 0


def _build_smoke_provider() -> FakeProvider:
    provider = FakeProvider()
    provider.extend(
        [
            tool_call_response("list_files", {"path": "."}, text="Inspecting the workspace."),
            tool_call_response(
                "write_file", {"path": "SMOKE.txt", "content": "smoke run\n"}
            ),
            tool_call_response("attempt_completion", {"result": "Wrote SMOKE.txt."}),
        ]
    )
    return provider


def _cmd_smoke(args: argparse.Namespace) -> int:
    if args.workspace is None:
        args.workspace = tempfile.mkdtemp(prefix="conductor-smoke-")
    workspace = Path(args.workspace)
    workspace.mkdir(parents=True, exist_ok=True)
    controller = _build(args, provider=_build_smoke_provider())
    try:
        handle = controller.start("Write SMOKE.txt into the workspace.")
        return _drive(controller, handle, interactive=False)
    finally:
        controller.close()


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from conductor.admin.app import create_app

    config = _config_from_args(args)
    controller = build_controller(
        Path(args.workspace), config=config, **_backend_kwargs(args)
    )
    app = create_app(controller)
    uvicorn.run(app, host=args.host, port=args.port, log_level=config.log_level.lower())
    controller.close()
    return 0


def _add_common(parser: argparse.ArgumentParser, with_backend: bool = True) -> None:
    parser.add_argument("--workspace", default=".", help="Workspace directory")
    parser.add_argument("--data-root", type=Path, default=None, help="Engine data directory")
    if with_backend:
        parser.add_argument("--backend", choices=list_backends(), default=None)
        parser.add_argument("--model", default=None)
        parser.add_argument("--base-url", default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="conductor")
    parser.add_argument("--log-level", default=None, help="Logging level (default from config)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Start a task for a goal")
    run_parser.add_argument("goal")
    _add_common(run_parser)
    run_parser.add_argument("--auto-approve", action="store_true")
    run_parser.add_argument(
        "--no-input", action="store_true", help="Stop instead of prompting when the task suspends"
    )
    run_parser.set_defaults(func=_cmd_run)

    resume_parser = subparsers.add_parser("resume", help="Resume a persisted task")
    resume_parser.add_argument("task_id")
    resume_parser.add_argument("--checkpoint", default=None)
    _add_common(resume_parser)
    resume_parser.add_argument("--auto-approve", action="store_true")
    resume_parser.add_argument("--no-input", action="store_true")
    resume_parser.set_defaults(func=_cmd_resume)

    tasks_parser = subparsers.add_parser("tasks", help="List persisted tasks")
    _add_common(tasks_parser)
    tasks_parser.add_argument("--json", action="store_true")
    tasks_parser.set_defaults(func=_cmd_tasks)

    checkpoints_parser = subparsers.add_parser("checkpoints", help="List or capture checkpoints")
    checkpoints_parser.add_argument("task_id")
    checkpoints_parser.add_argument("--capture", action="store_true")
    checkpoints_parser.add_argument("--label", default=None)
    _add_common(checkpoints_parser)
    checkpoints_parser.set_defaults(func=_cmd_checkpoints)

    diff_parser = subparsers.add_parser("diff", help="Show file changes between checkpoints")
    diff_parser.add_argument("task_id")
    diff_parser.add_argument("a")
    diff_parser.add_argument("b", nargs="?", default=None)
    diff_parser.add_argument("--json", action="store_true")
    _add_common(diff_parser)
    diff_parser.set_defaults(func=_cmd_diff)

    trace_parser = subparsers.add_parser("trace", help="Summarize a task trace")
    trace_parser.add_argument("task_id")
    trace_parser.add_argument("--data-root", type=Path, default=None)
    trace_parser.add_argument("--json", action="store_true")
    trace_parser.set_defaults(func=_cmd_trace)

    smoke_parser = subparsers.add_parser("smoke", help="Run a scripted task end to end")
    _add_common(smoke_parser, with_backend=False)
    smoke_parser.set_defaults(func=_cmd_smoke, workspace=None)

    serve_parser = subparsers.add_parser("serve", help="Serve the admin API")
    _add_common(serve_parser)
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8765)
    serve_parser.add_argument("--auto-approve", action="store_true")
    serve_parser.set_defaults(func=_cmd_serve)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    level = args.log_level or load_config(getattr(args, "data_root", None)).log_level
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
