"""Core data contracts and utilities."""

from .cancellation import CancellationToken
from .errors import EngineError
from .tracing import TraceEvent, TraceWriter
from .transcript import Transcript
from .types import Checkpoint, Task, TaskStatus, ToolCall, ToolResult, Turn

__all__ = [
    "CancellationToken",
    "Checkpoint",
    "EngineError",
    "Task",
    "TaskStatus",
    "ToolCall",
    "ToolResult",
    "TraceEvent",
    "TraceWriter",
    "Transcript",
    "Turn",
]
