from __future__ import annotations

import hashlib
import json
from collections import deque
from dataclasses import dataclass
from typing import Any

from conductor.core.types import ToolCall, ToolResult

DEFAULT_THRESHOLD = 3


def fingerprint(value: Any) -> str:
    try:
        encoded = json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        encoded = repr(value)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def call_fingerprint(call: ToolCall) -> str:
    return fingerprint({"name": call.name, "arguments": call.arguments})


def result_fingerprint(result: ToolResult) -> str:
    if result.ok:
        return fingerprint({"ok": True, "payload": result.payload})
    return fingerprint({"ok": False, "kind": result.error_kind, "message": result.message})


@dataclass(frozen=True, slots=True)
class CallRecord:
    name: str
    call_fp: str
    result_fp: str


class RepetitionGuard:
    """Flags tool calls that repeat without making progress.

    A call is blocked when it matches the name and arguments of each of the
    last ``threshold`` recorded calls. The window restarts whenever a result
    differs from the one before it, so polling that eventually observes a
    change is never flagged.
    """

    def __init__(self, threshold: int = DEFAULT_THRESHOLD, window_size: int | None = None) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = threshold
        self.window: deque[CallRecord] = deque(maxlen=max(threshold, window_size or threshold))

    def check(self, call: ToolCall) -> bool:
        if len(self.window) < self.threshold:
            return False
        call_fp = call_fingerprint(call)
        recent = list(self.window)[-self.threshold :]
        return all(record.call_fp == call_fp for record in recent)

    def record(self, call: ToolCall, result: ToolResult) -> None:
        record = CallRecord(
            name=call.name,
            call_fp=call_fingerprint(call),
            result_fp=result_fingerprint(result),
        )
        if self.window and self.window[-1].result_fp != record.result_fp:
            self.window.clear()
        self.window.append(record)

    def reset(self) -> None:
        self.window.clear()

    def __len__(self) -> int:
        return len(self.window)
