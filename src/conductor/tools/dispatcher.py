from __future__ import annotations

import inspect
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from conductor.core.cancellation import CancellationToken
from conductor.core.errors import (
    INVALID_ARGUMENTS,
    REPETITION_LIMIT_EXCEEDED,
    TOOL_EXECUTION_ERROR,
    TaskCancelled,
)
from conductor.core.types import UNPARSED_ARGUMENTS_KEY, ToolCall, ToolResult
from conductor.runtime.repetition import RepetitionGuard
from conductor.tools.context import ToolContext
from conductor.tools.registry import ToolRegistry, ToolSpec
from conductor.tools.settings import ToolSettings, default_tool_settings

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT_S = 120.0
DEFAULT_CANCEL_GRACE_S = 5.0
_POLL_INTERVAL_S = 0.05

BeforeMutation = Callable[[ToolCall], Any]


@dataclass(slots=True)
class PreparedCall:
    call: ToolCall
    spec: ToolSpec | None = None
    args: BaseModel | None = None
    failure: ToolResult | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def format_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "arguments"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts) or "invalid arguments"


def _invoke(handler: Callable[..., Any], args: BaseModel, context: ToolContext) -> Any:
    signature = inspect.signature(handler)
    params = signature.parameters.values()
    positional_params = [
        param
        for param in params
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD)
    ]
    has_varargs = any(param.kind is param.VAR_POSITIONAL for param in params)
    if has_varargs or len(positional_params) >= 2:
        return handler(args, context)
    return handler(args)


class ToolDispatcher:
    """Validates, guards and runs tool calls, always producing a ToolResult.

    Tool-level failures come back as failed results. The only exception that
    escapes ``execute`` is ``TaskCancelled`` when the task itself is
    cancelled while a tool runs.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        root: Path,
        settings: ToolSettings | None = None,
        guard: RepetitionGuard | None = None,
        default_timeout_s: float = DEFAULT_TOOL_TIMEOUT_S,
        cancel_grace_s: float = DEFAULT_CANCEL_GRACE_S,
        task_id: str = "",
    ) -> None:
        self.registry = registry
        self.root = Path(root)
        self.settings = settings or default_tool_settings(self.root)
        self.guard = guard or RepetitionGuard()
        self.default_timeout_s = default_timeout_s
        self.cancel_grace_s = cancel_grace_s
        self.task_id = task_id

    def schemas(self) -> list[dict[str, Any]]:
        return self.registry.schemas()

    def lookup(self, name: str) -> ToolSpec | None:
        return self.registry.lookup(name)

    def prepare(self, call: ToolCall) -> PreparedCall:
        spec = self.registry.lookup(call.name)
        if spec is None:
            return PreparedCall(
                call=call,
                failure=ToolResult.failure(call, INVALID_ARGUMENTS, f"unknown tool: {call.name}"),
            )
        if UNPARSED_ARGUMENTS_KEY in call.arguments:
            return PreparedCall(
                call=call,
                spec=spec,
                failure=ToolResult.failure(
                    call, INVALID_ARGUMENTS, "arguments are not a valid JSON object"
                ),
            )
        try:
            args = spec.args_model.model_validate(call.arguments)
        except ValidationError as exc:
            return PreparedCall(
                call=call,
                spec=spec,
                failure=ToolResult.failure(call, INVALID_ARGUMENTS, format_validation_error(exc)),
            )
        if self.guard.check(call):
            return PreparedCall(
                call=call,
                spec=spec,
                args=args,
                failure=ToolResult.failure(
                    call,
                    REPETITION_LIMIT_EXCEEDED,
                    f"{call.name} was called {self.guard.threshold} times in a row with the "
                    "same arguments and no change in result; try a different approach",
                ),
            )
        return PreparedCall(call=call, spec=spec, args=args)

    def execute(
        self,
        prepared: PreparedCall,
        *,
        cancel: CancellationToken | None = None,
        before_mutation: BeforeMutation | None = None,
    ) -> ToolResult:
        if prepared.failure is not None:
            return prepared.failure
        call = prepared.call
        spec = prepared.spec
        assert spec is not None and prepared.args is not None
        if spec.mutating and before_mutation is not None:
            before_mutation(call)
        result = self._run(spec, call, prepared.args, cancel)
        self.guard.record(call, result)
        return result

    def dispatch(
        self,
        call: ToolCall,
        *,
        cancel: CancellationToken | None = None,
        before_mutation: BeforeMutation | None = None,
    ) -> ToolResult:
        return self.execute(self.prepare(call), cancel=cancel, before_mutation=before_mutation)

    def _run(
        self,
        spec: ToolSpec,
        call: ToolCall,
        args: BaseModel,
        cancel: CancellationToken | None,
    ) -> ToolResult:
        timeout_s = spec.timeout_s or self.default_timeout_s
        tool_token = CancellationToken()
        unregister = cancel.on_cancel(tool_token.cancel) if cancel is not None else (lambda: None)
        context = ToolContext(
            root=self.root,
            settings=self.settings,
            task_id=self.task_id,
            call_id=call.id,
            cancel=tool_token,
        )
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def _target() -> None:
            try:
                outcome["value"] = _invoke(spec.handler, args, context)
            except BaseException as exc:  # noqa: BLE001
                outcome["error"] = exc
            finally:
                done.set()

        worker = threading.Thread(target=_target, name=f"tool-{call.name}", daemon=True)
        started = time.monotonic()
        worker.start()
        try:
            while not done.wait(_POLL_INTERVAL_S):
                if cancel is not None and cancel.cancelled:
                    tool_token.cancel()
                    if not done.wait(self.cancel_grace_s):
                        logger.warning(
                            "tool %s did not stop within %.1fs of cancellation; abandoning it",
                            call.name,
                            self.cancel_grace_s,
                        )
                    raise TaskCancelled()
                if time.monotonic() - started >= timeout_s:
                    tool_token.cancel()
                    if not done.wait(self.cancel_grace_s):
                        logger.warning("tool %s ignored its timeout; abandoning it", call.name)
                    return ToolResult.failure(
                        call, TOOL_EXECUTION_ERROR, f"{call.name} timed out after {timeout_s:g}s"
                    )
        finally:
            unregister()

        if cancel is not None and cancel.cancelled:
            raise TaskCancelled()
        error = outcome.get("error")
        if error is not None:
            if not isinstance(error, Exception):
                raise error
            message = str(error) or error.__class__.__name__
            logger.info("tool %s failed: %s", call.name, message)
            return ToolResult.failure(call, TOOL_EXECUTION_ERROR, message)
        return ToolResult.success(call, outcome.get("value"))
