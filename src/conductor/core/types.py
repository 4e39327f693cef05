from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List


class TaskStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_TOOL_APPROVAL = "awaiting_tool_approval"
    AWAITING_USER_INPUT = "awaiting_user_input"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def awaiting(self) -> bool:
        return self in (TaskStatus.AWAITING_TOOL_APPROVAL, TaskStatus.AWAITING_USER_INPUT)


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.ABORTED})

ROLES = ("system", "user", "assistant", "tool_call", "tool_result")

# Key under which the raw text of unparseable tool arguments is kept.
UNPARSED_ARGUMENTS_KEY = "__unparsed__"


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(slots=True)
class ToolResult:
    tool_call_id: str
    name: str
    ok: bool
    payload: Any | None = None
    error_kind: str | None = None
    message: str | None = None

    @classmethod
    def success(cls, call: ToolCall, payload: Any) -> "ToolResult":
        return cls(tool_call_id=call.id, name=call.name, ok=True, payload=payload)

    @classmethod
    def failure(cls, call: ToolCall, error_kind: str, message: str) -> "ToolResult":
        return cls(
            tool_call_id=call.id,
            name=call.name,
            ok=False,
            error_kind=error_kind,
            message=message,
        )


@dataclass(slots=True)
class Block:
    kind: str
    text: str | None = None
    call: ToolCall | None = None
    result: ToolResult | None = None
    ref: str | None = None

    @classmethod
    def of_text(cls, text: str) -> "Block":
        return cls(kind="text", text=text)

    @classmethod
    def of_call(cls, call: ToolCall) -> "Block":
        return cls(kind="tool_call", call=call)

    @classmethod
    def of_result(cls, result: ToolResult) -> "Block":
        return cls(kind="tool_result", result=result)

    @classmethod
    def of_image(cls, ref: str) -> "Block":
        return cls(kind="image", ref=ref)


@dataclass(slots=True)
class Turn:
    seq: int
    role: str
    blocks: List[Block] = field(default_factory=list)
    ts: float = 0.0
    summary_of: List[int] | None = None

    @property
    def text(self) -> str:
        return "".join(block.text or "" for block in self.blocks if block.kind == "text")

    @property
    def call(self) -> ToolCall | None:
        for block in self.blocks:
            if block.kind == "tool_call" and block.call is not None:
                return block.call
        return None

    @property
    def result(self) -> ToolResult | None:
        for block in self.blocks:
            if block.kind == "tool_result" and block.result is not None:
                return block.result
        return None


@dataclass(slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, input_tokens: int = 0, output_tokens: int = 0) -> None:
        self.input_tokens += max(0, int(input_tokens))
        self.output_tokens += max(0, int(output_tokens))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class Transition:
    source: str
    target: str
    ts: float
    reason: str = ""


@dataclass(slots=True)
class Task:
    task_id: str
    goal: str
    workspace: str
    status: TaskStatus = TaskStatus.IDLE
    created_ts: float = 0.0
    updated_ts: float = 0.0
    usage: Usage = field(default_factory=Usage)
    summary: str | None = None
    last_error: dict[str, str] | None = None
    warnings: List[str] = field(default_factory=list)
    pending_calls: List[ToolCall] = field(default_factory=list)
    awaiting: ToolCall | None = None
    consecutive_mistakes: int = 0
    transitions: List[Transition] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Checkpoint:
    checkpoint_id: str
    task_id: str
    sequence_position: int
    turn_seqs: tuple[int, ...]
    snapshot: str
    label: str | None
    created_ts: float


@dataclass(slots=True)
class ContextBudget:
    max_input_tokens: int
    reserved_output_tokens: int
    current_estimate: int = 0

    @property
    def limit(self) -> int:
        return max(0, self.max_input_tokens - self.reserved_output_tokens)

    @property
    def fits(self) -> bool:
        return self.current_estimate <= self.limit


@dataclass(slots=True)
class ChangeSet:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.modified)
