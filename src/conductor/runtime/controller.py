"""Task state machine: drives model turns, tool calls, suspension and recovery."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.backends import get_backend
from conductor.config import EngineConfig, load_config
from conductor.core.cancellation import CancellationToken
from conductor.core.errors import (
    DEGRADED_CONTEXT,
    INVALID_ARGUMENTS,
    NETWORK_INTERRUPTED,
    REPETITION_LIMIT_EXCEEDED,
    TOOL_DENIED,
    TOOL_EXECUTION_ERROR,
    EngineError,
    InvalidGoal,
    InvalidState,
    ProviderFailure,
    TaskCancelled,
)
from conductor.core.tracing import TraceWriter
from conductor.core.transcript import Transcript
from conductor.core.types import (
    ChangeSet,
    Checkpoint,
    Task,
    TaskStatus,
    ToolCall,
    ToolResult,
    Transition,
    Turn,
)
from conductor.prompts import get_system_prompt
from conductor.runtime.checkpoints import CheckpointStore
from conductor.runtime.condense import ContextPolicy, ContextWindowManager, truncate_text
from conductor.runtime.gateway import (
    Completed,
    ProviderError,
    ProviderGateway,
    TextDelta,
    ToolCallRequested,
    UsageReported,
)
from conductor.runtime.locks import WorkspaceLock
from conductor.runtime.notify import (
    AWAITING_INPUT,
    STATE_CHANGED,
    TEXT_DELTA,
    TOOL_CALL_FINISHED,
    TOOL_CALL_STARTED,
    WARNING,
    HostEvent,
    HostSink,
    NullSink,
    safe_publish,
)
from conductor.runtime.repetition import RepetitionGuard
from conductor.runtime.retry import RetryPolicy
from conductor.runtime.store import TaskStore
from conductor.tools import build_default_registry
from conductor.tools.control import ASK_FOLLOWUP_QUESTION, ATTEMPT_COMPLETION
from conductor.tools.dispatcher import ToolDispatcher
from conductor.tools.registry import ToolRegistry
from conductor.tools.settings import ToolSettings, default_tool_settings
from conductor.tools.workspace import WorkspaceStorage

logger = logging.getLogger(__name__)

_SUMMARY_RESULT_CHARS = 2_000


@dataclass(slots=True)
class Suspension:
    status: TaskStatus
    call: ToolCall | None
    payload: dict[str, Any] = field(default_factory=dict)
    reason: str = ""


@dataclass(slots=True)
class ModelResponse:
    text: str
    calls: list[ToolCall]
    finish_reason: str
    attempts: int


@dataclass(slots=True)
class _Session:
    task: Task
    transcript: Transcript
    dispatcher: ToolDispatcher
    tracer: TraceWriter
    cancel: CancellationToken = field(default_factory=CancellationToken)
    guard: threading.RLock = field(default_factory=threading.RLock)
    step_lock: threading.RLock = field(default_factory=threading.RLock)
    settled: threading.Event = field(default_factory=threading.Event)
    worker: threading.Thread | None = None
    step_checkpoint: Checkpoint | None = None
    approved: set[str] = field(default_factory=set)


class TaskHandle:
    def __init__(self, controller: "TaskController", task_id: str) -> None:
        self._controller = controller
        self.task_id = task_id

    @property
    def task(self) -> Task:
        return self._controller.get_task(self.task_id)

    @property
    def status(self) -> TaskStatus:
        return self.task.status

    def wait(self, timeout: float | None = None) -> TaskStatus:
        """Block until the task is terminal or suspended, or ``timeout`` passes."""
        session = self._controller._sessions.get(self.task_id)
        if session is not None:
            session.settled.wait(timeout)
        return self.status

    def cancel(self) -> None:
        self._controller.cancel(self.task_id)

    def __repr__(self) -> str:
        return f"TaskHandle({self.task_id!r})"


def render_turns_for_summary(turns: list[Turn]) -> str:
    lines: list[str] = []
    for turn in turns:
        if turn.role == "tool_call" and turn.call is not None:
            arguments = json.dumps(turn.call.arguments, ensure_ascii=False, default=str)
            arguments = truncate_text(arguments, _SUMMARY_RESULT_CHARS)
            lines.append(f"[tool call] {turn.call.name} {arguments}")
        elif turn.role == "tool_result" and turn.result is not None:
            result = turn.result
            if result.ok:
                body = json.dumps(result.payload, ensure_ascii=False, default=str)
                body = truncate_text(body, _SUMMARY_RESULT_CHARS)
                lines.append(f"[tool result] {result.name} ok: {body}")
            else:
                lines.append(f"[tool result] {result.name} {result.error_kind}: {result.message}")
        else:
            lines.append(f"[{turn.role}] {turn.text}")
    return "\n".join(lines)


class TaskController:
    def __init__(
        self,
        provider: Any,
        registry: ToolRegistry,
        workspace: Path,
        data_root: Path | None = None,
        config: EngineConfig | None = None,
        sink: HostSink | None = None,
        tool_settings: ToolSettings | None = None,
    ) -> None:
        base = config or EngineConfig()
        if data_root is not None:
            base = base.replace(data_root=Path(data_root).resolve())
        self.config = base
        self.workspace = Path(workspace).resolve()
        self.registry = registry
        self.sink: HostSink = sink or NullSink()
        self.tool_settings = tool_settings or default_tool_settings(self.workspace)
        self.gateway = ProviderGateway(provider)
        self.context = ContextWindowManager(
            ContextPolicy(
                max_input_tokens=base.max_input_tokens,
                reserved_output_tokens=base.reserved_output_tokens,
                keep_recent_turns=base.keep_recent_turns,
            )
        )
        self.retry = RetryPolicy(
            max_attempts=base.retry_max_attempts,
            base_delay=base.retry_base_delay_s,
            max_delay=base.retry_max_delay_s,
        )
        self.store = TaskStore(base.tasks_dir)
        self.storage = WorkspaceStorage(
            self.workspace,
            base.snapshots_dir,
            ignore=self.tool_settings.ignore_names,
            exclude=[base.data_root],
        )
        self.checkpoints = CheckpointStore(
            base.checkpoints_dir, self.storage, max_checkpoints=base.max_checkpoints
        )
        self.workspace_lock = WorkspaceLock(base.locks_dir, self.workspace)
        self._sessions: dict[str, _Session] = {}
        self._lock = threading.Lock()

    # ----- public contract -------------------------------------------------

    def start(self, goal: str) -> TaskHandle:
        if not isinstance(goal, str) or not goal.strip():
            raise InvalidGoal("goal must be a non-empty string")
        task_id = uuid.uuid4().hex[:12]
        self.workspace_lock.acquire(task_id)
        try:
            now = time.time()
            task = Task(
                task_id=task_id,
                goal=goal.strip(),
                workspace=str(self.workspace),
                created_ts=now,
                updated_ts=now,
            )
            transcript = Transcript()
            transcript.append_text(
                "system", get_system_prompt("engine", workspace=str(self.workspace))
            )
            transcript.append_text("user", task.goal)
            session = self._new_session(task, transcript)
            with session.guard:
                self._transition(session, TaskStatus.RUNNING, "started")
                self._spawn(session)
        except BaseException:
            self.workspace_lock.release(task_id)
            with self._lock:
                self._sessions.pop(task_id, None)
            raise
        logger.info("task %s started", task_id)
        return TaskHandle(self, task_id)

    def resume(self, task_id: str, checkpoint_id: str | None = None) -> TaskHandle:
        session = self._session(task_id)
        with session.guard:
            task = session.task
            if session.worker is not None:
                raise InvalidState(f"task {task_id} is already running")
            if task.workspace != str(self.workspace):
                raise InvalidState(f"task {task_id} belongs to workspace {task.workspace}")
            self.workspace_lock.acquire(task_id)
            session.cancel = CancellationToken()
            session.dispatcher.guard.reset()
            if checkpoint_id is not None:
                try:
                    with session.step_lock:
                        checkpoint = self.checkpoints.restore(
                            task_id, checkpoint_id, session.transcript
                        )
                        task.pending_calls = []
                        task.awaiting = None
                        session.step_checkpoint = None
                        self._append_resumption(session)
                except EngineError:
                    if task.status.terminal:
                        self.workspace_lock.release(task_id)
                    raise
                session.tracer.emit(
                    "checkpoint", action="restore", checkpoint_id=checkpoint.checkpoint_id
                )
                self._transition(session, TaskStatus.RUNNING, f"resumed from {checkpoint_id}")
                self._spawn(session)
                return TaskHandle(self, task_id)
            if task.status.awaiting:
                session.settled.set()
                self._publish_awaiting(session, self._awaiting_payload(session))
                return TaskHandle(self, task_id)
            with session.step_lock:
                dangling = session.transcript.pending_call()
                if dangling is not None:
                    session.transcript.append_result(
                        ToolResult.failure(
                            dangling,
                            TOOL_EXECUTION_ERROR,
                            "interrupted before completion; the outcome is unknown",
                        )
                    )
                task.pending_calls = []
                task.awaiting = None
                self._append_resumption(session)
            self._transition(session, TaskStatus.RUNNING, "resumed")
            self._spawn(session)
        return TaskHandle(self, task_id)

    def cancel(self, task_id: str) -> None:
        session = self._session(task_id)
        with session.guard:
            if session.task.status.terminal:
                return
            session.cancel.cancel()
            if session.worker is not None:
                return
            self._abort(session, "cancelled")

    def provide_input(self, task_id: str, reply: str) -> None:
        session = self._session(task_id)
        with session.guard:
            task = session.task
            if task.status is not TaskStatus.AWAITING_USER_INPUT or session.worker is not None:
                raise InvalidState(f"task {task_id} is not awaiting user input")
            self.workspace_lock.acquire(task_id)
            call = task.awaiting
            with session.step_lock:
                if call is not None:
                    self._commit_result(
                        session, call, ToolResult.success(call, {"answer": reply})
                    )
                else:
                    session.transcript.append_text("user", reply)
                    task.consecutive_mistakes = 0
                task.awaiting = None
                self._persist(session)
            self._transition(session, TaskStatus.RUNNING, "user input")
            self._spawn(session)

    def approve_tool(
        self,
        task_id: str,
        tool_call_id: str,
        decision: bool,
        feedback: str | None = None,
    ) -> None:
        session = self._session(task_id)
        with session.guard:
            task = session.task
            if task.status is not TaskStatus.AWAITING_TOOL_APPROVAL or session.worker is not None:
                raise InvalidState(f"task {task_id} is not awaiting tool approval")
            call = task.awaiting
            if call is None or call.id != tool_call_id:
                raise InvalidState(f"task {task_id} is not awaiting approval of {tool_call_id}")
            self.workspace_lock.acquire(task_id)
            with session.step_lock:
                task.awaiting = None
                if decision:
                    session.approved.add(call.id)
                else:
                    message = "the user denied this tool call"
                    if feedback:
                        message = f"{message}: {feedback}"
                    self._commit_result(
                        session, call, ToolResult.failure(call, TOOL_DENIED, message)
                    )
                self._persist(session)
            reason = "tool approved" if decision else "tool denied"
            self._transition(session, TaskStatus.RUNNING, reason)
            self._spawn(session)

    # ----- supplementary ---------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        session = self._sessions.get(task_id)
        if session is not None:
            return session.task
        task, _ = self.store.load(task_id)
        return task

    def list_tasks(self) -> list[Task]:
        tasks = {task.task_id: task for task in self.store.list_tasks()}
        for task_id, session in list(self._sessions.items()):
            tasks[task_id] = session.task
        return sorted(tasks.values(), key=lambda item: item.created_ts)

    def transcript(self, task_id: str) -> Transcript:
        return self._session(task_id).transcript

    def capture_checkpoint(self, task_id: str, label: str | None = None) -> Checkpoint:
        session = self._session(task_id)
        with session.step_lock:
            checkpoint = self.checkpoints.capture(task_id, session.transcript, label=label)
            self._persist(session)
        session.tracer.emit(
            "checkpoint", action="capture", checkpoint_id=checkpoint.checkpoint_id, label=label
        )
        return checkpoint

    def list_checkpoints(self, task_id: str) -> list[Checkpoint]:
        self._session(task_id)
        return self.checkpoints.list_checkpoints(task_id)

    def diff_checkpoints(self, task_id: str, a: str, b: str | None = None) -> ChangeSet:
        self._session(task_id)
        return self.checkpoints.diff(task_id, a, b)

    def purge(self, task_id: str) -> None:
        session = self._session(task_id)
        with session.guard:
            if not session.task.status.terminal or session.worker is not None:
                raise InvalidState(f"task {task_id} must be finished before it is purged")
            self.checkpoints.purge(task_id)
            self.store.delete(task_id)
            with self._lock:
                self._sessions.pop(task_id, None)
        logger.info("task %s purged", task_id)

    def close(self, timeout: float | None = None) -> None:
        """Cancel every running task and wait for the workers to exit."""
        for session in list(self._sessions.values()):
            worker = session.worker
            if worker is not None:
                self.cancel(session.task.task_id)
                worker.join(timeout)

    # ----- session plumbing -------------------------------------------------

    def _new_session(self, task: Task, transcript: Transcript) -> _Session:
        dispatcher = ToolDispatcher(
            self.registry,
            self.workspace,
            settings=self.tool_settings,
            guard=RepetitionGuard(threshold=self.config.repetition_threshold),
            default_timeout_s=self.config.tool_timeout_s,
            cancel_grace_s=self.config.cancel_grace_s,
            task_id=task.task_id,
        )
        session = _Session(
            task=task,
            transcript=transcript,
            dispatcher=dispatcher,
            tracer=TraceWriter(task.task_id, base_dir=self.config.traces_dir),
        )
        session.settled.set()
        with self._lock:
            self._sessions[task.task_id] = session
        return session

    def _session(self, task_id: str) -> _Session:
        with self._lock:
            session = self._sessions.get(task_id)
        if session is not None:
            return session
        task, transcript = self.store.load(task_id)
        with self._lock:
            existing = self._sessions.get(task_id)
            if existing is not None:
                return existing
        return self._new_session(task, transcript)

    def _spawn(self, session: _Session) -> None:
        session.settled.clear()
        worker = threading.Thread(
            target=self._run,
            args=(session,),
            name=f"task-{session.task.task_id}",
            daemon=True,
        )
        session.worker = worker
        worker.start()

    def _persist(self, session: _Session) -> None:
        with session.step_lock:
            session.task.updated_ts = time.time()
            self.store.save(session.task, session.transcript)

    def _publish(self, session: _Session, kind: str, payload: dict[str, Any]) -> None:
        safe_publish(self.sink, HostEvent(task_id=session.task.task_id, kind=kind, payload=payload))

    def _transition(self, session: _Session, target: TaskStatus, reason: str = "") -> None:
        task = session.task
        source = task.status
        if source is target:
            return
        now = time.time()
        task.transitions.append(
            Transition(source=source.value, target=target.value, ts=now, reason=reason)
        )
        task.status = target
        self._persist(session)
        session.tracer.emit("state", source=source.value, target=target.value, reason=reason)
        self._publish(
            session, STATE_CHANGED, {"from": source.value, "to": target.value, "reason": reason}
        )
        if target.terminal:
            self.workspace_lock.release(task.task_id)
            logger.info("task %s %s (%s)", task.task_id, target.value, reason)

    def _append_resumption(self, session: _Session) -> None:
        session.transcript.append_text("user", get_system_prompt("resume"))
        session.task.consecutive_mistakes = 0
        session.task.last_error = None
        self._persist(session)

    # ----- worker -----------------------------------------------------------

    def _run(self, session: _Session) -> None:
        outcome: Suspension | None = None
        try:
            outcome = self._loop(session)
        except TaskCancelled:
            pass
        except EngineError as exc:
            logger.warning("task %s failed: %s", session.task.task_id, exc.message)
            self._fail(session, exc.to_dict())
        except Exception as exc:  # noqa: BLE001
            logger.exception("task %s crashed", session.task.task_id)
            self._fail(session, {"kind": "InternalError", "message": str(exc) or type(exc).__name__})
        finally:
            with session.guard:
                if session.worker is threading.current_thread():
                    session.worker = None
                if not session.task.status.terminal:
                    if session.cancel.cancelled:
                        self._abort(session, "cancelled")
                    elif outcome is not None:
                        self._suspend(session, outcome)
                session.settled.set()

    def _loop(self, session: _Session) -> Suspension | None:
        task = session.task
        while True:
            session.cancel.raise_if_cancelled()
            if task.status.terminal:
                return None
            if task.pending_calls:
                outcome = self._process_call(session, task.pending_calls[0])
                if outcome is not None or task.status.terminal:
                    return outcome
                continue
            if task.consecutive_mistakes >= self.config.max_consecutive_mistakes:
                return Suspension(
                    status=TaskStatus.AWAITING_USER_INPUT,
                    call=None,
                    payload={
                        "kind": "guidance",
                        "message": (
                            f"the model made {task.consecutive_mistakes} consecutive responses "
                            "without progress; please provide guidance"
                        ),
                    },
                    reason="mistake limit reached",
                )
            self._model_turn(session)

    def _model_turn(self, session: _Session) -> None:
        task = session.task
        schemas = session.dispatcher.schemas()
        with session.step_lock:
            report = self.context.prepare(
                session.transcript,
                schemas,
                summarize=lambda turns: self._summarize(session, turns),
            )
            if report.changed:
                session.transcript.prune_archive(self.checkpoints.referenced_seqs(task.task_id))
                self._persist(session)
        if report.changed:
            session.tracer.emit(
                "context",
                action=report.action,
                before=report.before_tokens,
                after=report.budget.current_estimate,
                removed_turns=report.removed_turns,
                summary_error=report.summary_error,
            )
        if report.degraded:
            task.warnings.append(DEGRADED_CONTEXT)
            self._persist(session)
            self._publish(
                session,
                WARNING,
                {
                    "kind": DEGRADED_CONTEXT,
                    "removed_turns": report.removed_turns,
                    "summary_error": report.summary_error,
                },
            )

        response = self._request(session, report.prompt, schemas)

        with session.step_lock:
            if response.text:
                session.transcript.append_text("assistant", response.text)
            calls = list(response.calls)
            for index, call in enumerate(calls):
                if call.name == ATTEMPT_COMPLETION:
                    dropped = calls[index + 1 :]
                    if dropped:
                        logger.info(
                            "task %s: ignoring %d tool calls after %s",
                            task.task_id,
                            len(dropped),
                            ATTEMPT_COMPLETION,
                        )
                    calls = calls[: index + 1]
                    break
            task.pending_calls = calls
            if not calls:
                task.consecutive_mistakes += 1
                session.transcript.append_text("user", get_system_prompt("mistake"))
            self._persist(session)

    def _request(
        self,
        session: _Session,
        prompt: list[Turn],
        schemas: list[dict[str, Any]],
    ) -> ModelResponse:
        task = session.task
        attempt = 0
        while True:
            attempt += 1
            session.cancel.raise_if_cancelled()
            session.tracer.emit("llm_req", attempt=attempt, turns=len(prompt))
            started = time.monotonic()
            text_parts: list[str] = []
            calls: list[ToolCall] = []
            finish_reason: str | None = None
            error: ProviderError | None = None
            for event in self.gateway.stream(prompt, schemas, cancel=session.cancel):
                if isinstance(event, TextDelta):
                    text_parts.append(event.text)
                    self._publish(session, TEXT_DELTA, {"text": event.text, "attempt": attempt})
                elif isinstance(event, ToolCallRequested):
                    calls.append(event.call)
                elif isinstance(event, UsageReported):
                    task.usage.add(event.input_tokens, event.output_tokens)
                elif isinstance(event, Completed):
                    finish_reason = event.finish_reason
                elif isinstance(event, ProviderError):
                    error = event
            session.cancel.raise_if_cancelled()
            latency_ms = int((time.monotonic() - started) * 1000)
            if error is None and finish_reason is not None:
                session.tracer.emit(
                    "llm_done",
                    attempt=attempt,
                    latency_ms=latency_ms,
                    finish_reason=finish_reason,
                    tool_calls=[call.name for call in calls],
                    chars=sum(len(part) for part in text_parts),
                )
                return ModelResponse(
                    text="".join(text_parts),
                    calls=calls,
                    finish_reason=finish_reason,
                    attempts=attempt,
                )
            if error is None:
                error = ProviderError(
                    kind=NETWORK_INTERRUPTED, retryable=True, message="stream ended unexpectedly"
                )
            session.tracer.emit(
                "llm_error", attempt=attempt, error_kind=error.kind, message=error.message
            )
            if error.retryable and self.retry.should_retry(error.kind, attempt):
                delay = self.retry.calculate_delay(attempt)
                session.tracer.emit("retry", attempt=attempt, error_kind=error.kind, delay_s=delay)
                self._publish(
                    session,
                    WARNING,
                    {
                        "kind": error.kind,
                        "message": error.message,
                        "attempt": attempt,
                        "retry_in_s": delay,
                    },
                )
                if session.cancel.wait(delay):
                    raise TaskCancelled()
                continue
            raise ProviderFailure(error.kind, error.message, error.retryable)

    def _summarize(self, session: _Session, turns: list[Turn]) -> str:
        prompt = Transcript()
        prompt.append_text("system", get_system_prompt("summarize"))
        prompt.append_text("user", render_turns_for_summary(turns))
        parts: list[str] = []
        for event in self.gateway.stream(
            prompt.turns, [], cancel=session.cancel, purpose="summarize"
        ):
            if isinstance(event, TextDelta):
                parts.append(event.text)
            elif isinstance(event, UsageReported):
                session.task.usage.add(event.input_tokens, event.output_tokens)
            elif isinstance(event, ProviderError):
                raise ProviderFailure(event.kind, event.message, event.retryable)
        session.cancel.raise_if_cancelled()
        return "".join(parts)

    def _process_call(self, session: _Session, call: ToolCall) -> Suspension | None:
        task = session.task
        transcript = session.transcript
        with session.step_lock:
            pending = transcript.pending_call()
            if pending is None or pending.id != call.id:
                transcript.append_call(call)
                self._persist(session)
                session.tracer.emit("tool_start", tool=call.name, call_id=call.id, args=call.arguments)
                self._publish(
                    session,
                    TOOL_CALL_STARTED,
                    {"call_id": call.id, "name": call.name, "arguments": call.arguments},
                )

            prepared = session.dispatcher.prepare(call)
            if prepared.ok and call.name == ASK_FOLLOWUP_QUESTION:
                return Suspension(
                    status=TaskStatus.AWAITING_USER_INPUT,
                    call=call,
                    payload={
                        "kind": "question",
                        "call_id": call.id,
                        "question": prepared.args.question,
                    },
                    reason="question for the user",
                )
            if prepared.ok and call.name == ATTEMPT_COMPLETION:
                session.cancel.raise_if_cancelled()
                summary = prepared.args.result.strip()
                self._commit_result(session, call, ToolResult.success(call, {"result": summary}))
                task.summary = summary
                task.pending_calls = []
                self._transition(session, TaskStatus.COMPLETED, "attempt_completion")
                return None
            spec = prepared.spec
            if (
                prepared.ok
                and spec is not None
                and spec.requires_approval
                and not self.config.auto_approve
                and call.id not in session.approved
            ):
                return Suspension(
                    status=TaskStatus.AWAITING_TOOL_APPROVAL,
                    call=call,
                    payload={
                        "kind": "approval",
                        "call_id": call.id,
                        "name": call.name,
                        "arguments": call.arguments,
                    },
                    reason=f"{call.name} requires approval",
                )

            result = session.dispatcher.execute(
                prepared,
                cancel=session.cancel,
                before_mutation=lambda _call: self._capture_step_checkpoint(session),
            )
            session.approved.discard(call.id)
            self._commit_result(session, call, result)
        return None

    def _capture_step_checkpoint(self, session: _Session) -> None:
        with session.step_lock:
            checkpoint = self.checkpoints.capture(session.task.task_id, session.transcript)
            session.step_checkpoint = checkpoint
            self._persist(session)
        session.tracer.emit(
            "checkpoint",
            action="capture",
            checkpoint_id=checkpoint.checkpoint_id,
            position=checkpoint.sequence_position,
        )

    def _commit_result(self, session: _Session, call: ToolCall, result: ToolResult) -> None:
        task = session.task
        with session.step_lock:
            session.transcript.append_result(result)
            if task.pending_calls and task.pending_calls[0].id == call.id:
                task.pending_calls.pop(0)
            session.step_checkpoint = None
            if result.ok:
                task.consecutive_mistakes = 0
            elif result.error_kind in (INVALID_ARGUMENTS, REPETITION_LIMIT_EXCEEDED):
                task.consecutive_mistakes += 1
            self._persist(session)
        session.tracer.emit(
            "tool_done",
            tool=call.name,
            call_id=call.id,
            ok=result.ok,
            error_kind=result.error_kind,
            message=result.message,
        )
        self._publish(
            session,
            TOOL_CALL_FINISHED,
            {
                "call_id": call.id,
                "name": call.name,
                "ok": result.ok,
                "error_kind": result.error_kind,
                "message": result.message,
            },
        )

    def _suspend(self, session: _Session, outcome: Suspension) -> None:
        session.task.awaiting = outcome.call
        self._transition(session, outcome.status, outcome.reason)
        self._publish_awaiting(session, outcome.payload)

    def _awaiting_payload(self, session: _Session) -> dict[str, Any]:
        task = session.task
        call = task.awaiting
        if task.status is TaskStatus.AWAITING_TOOL_APPROVAL and call is not None:
            return {
                "kind": "approval",
                "call_id": call.id,
                "name": call.name,
                "arguments": call.arguments,
            }
        if call is not None:
            return {"kind": "question", "call_id": call.id, "question": call.arguments.get("question")}
        return {"kind": "guidance"}

    def _publish_awaiting(self, session: _Session, payload: dict[str, Any]) -> None:
        self._publish(session, AWAITING_INPUT, {"status": session.task.status.value, **payload})

    def _fail(self, session: _Session, error: dict[str, str]) -> None:
        with session.guard:
            if session.task.status.terminal:
                return
            session.task.last_error = error
            self._transition(session, TaskStatus.FAILED, error.get("kind", ""))

    def _abort(self, session: _Session, reason: str) -> None:
        task = session.task
        with session.step_lock:
            checkpoint = session.step_checkpoint
            if checkpoint is not None:
                try:
                    self.checkpoints.restore(task.task_id, checkpoint.checkpoint_id, session.transcript)
                    self.checkpoints.discard(task.task_id, checkpoint.checkpoint_id)
                    session.tracer.emit(
                        "checkpoint", action="rollback", checkpoint_id=checkpoint.checkpoint_id
                    )
                except (EngineError, OSError, ValueError, KeyError):
                    logger.exception(
                        "task %s: rollback to %s failed", task.task_id, checkpoint.checkpoint_id
                    )
                session.step_checkpoint = None
            dangling = session.transcript.pending_call()
            if dangling is not None:
                session.transcript.append_result(
                    ToolResult.failure(dangling, TOOL_EXECUTION_ERROR, "cancelled by the user")
                )
            task.pending_calls = []
            task.awaiting = None
            session.approved.clear()
        self._transition(session, TaskStatus.ABORTED, reason)


def build_controller(
    workspace: Path,
    config: EngineConfig | None = None,
    sink: HostSink | None = None,
    provider: Any | None = None,
    **backend_kwargs: Any,
) -> TaskController:
    """Wire a controller with the configured backend and the default tool set."""
    settings = config or load_config()
    client = provider if provider is not None else get_backend(settings.backend, **backend_kwargs)
    root = Path(workspace).resolve()
    tool_settings = default_tool_settings(root)
    registry = build_default_registry(root, tool_settings)
    return TaskController(
        client,
        registry,
        root,
        config=settings,
        sink=sink,
        tool_settings=tool_settings,
    )
