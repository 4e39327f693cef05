"""Host notification channel.

Delivery is fire-and-forget: a sink that raises is logged and the engine
carries on.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol

from conductor.core.tracing import TraceWriter

logger = logging.getLogger(__name__)

TEXT_DELTA = "textDelta"
TOOL_CALL_STARTED = "toolCallStarted"
TOOL_CALL_FINISHED = "toolCallFinished"
STATE_CHANGED = "stateChanged"
AWAITING_INPUT = "awaitingInput"
WARNING = "warning"

EVENT_KINDS = (
    TEXT_DELTA,
    TOOL_CALL_STARTED,
    TOOL_CALL_FINISHED,
    STATE_CHANGED,
    AWAITING_INPUT,
    WARNING,
)


@dataclass(slots=True)
class HostEvent:
    task_id: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)


class HostSink(Protocol):
    def publish(self, event: HostEvent) -> None:
        ...


def safe_publish(sink: HostSink | None, event: HostEvent) -> None:
    if sink is None:
        return
    try:
        sink.publish(event)
    except Exception:  # noqa: BLE001
        logger.exception("host sink %s failed on %s", type(sink).__name__, event.kind)


class NullSink:
    def publish(self, event: HostEvent) -> None:
        return None


class BufferedSink:
    """Keeps the most recent events per task, addressable by cursor.

    Cursors are absolute event indexes per task, so a reader that falls
    behind the buffer simply resumes at the oldest retained event.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self.max_events = max_events
        self._lock = threading.Lock()
        self._events: dict[str, deque[HostEvent]] = {}
        self._counts: dict[str, int] = {}

    def publish(self, event: HostEvent) -> None:
        with self._lock:
            buffer = self._events.setdefault(event.task_id, deque(maxlen=self.max_events))
            buffer.append(event)
            self._counts[event.task_id] = self._counts.get(event.task_id, 0) + 1

    def events(self, task_id: str, after: int = 0) -> tuple[list[HostEvent], int]:
        with self._lock:
            buffer = list(self._events.get(task_id, ()))
            total = self._counts.get(task_id, 0)
        first = total - len(buffer)
        start = max(after, first) - first
        return buffer[start:], total

    def clear(self, task_id: str) -> None:
        with self._lock:
            self._events.pop(task_id, None)
            self._counts.pop(task_id, None)


class TraceSink:
    def __init__(self, trace_dir: Path, kinds: Iterable[str] | None = None) -> None:
        self.trace_dir = Path(trace_dir)
        # Text deltas are noisy; they are only traced when asked for.
        self.kinds = set(kinds) if kinds is not None else set(EVENT_KINDS) - {TEXT_DELTA}
        self._writers: dict[str, TraceWriter] = {}
        self._lock = threading.Lock()

    def publish(self, event: HostEvent) -> None:
        if event.kind not in self.kinds:
            return
        with self._lock:
            writer = self._writers.get(event.task_id)
            if writer is None:
                writer = TraceWriter(event.task_id, base_dir=self.trace_dir)
                self._writers[event.task_id] = writer
        writer.emit(f"host.{event.kind}", **event.payload)


class FanoutSink:
    def __init__(self, *sinks: HostSink) -> None:
        self.sinks = list(sinks)

    def add(self, sink: HostSink) -> None:
        self.sinks.append(sink)

    def publish(self, event: HostEvent) -> None:
        for sink in self.sinks:
            safe_publish(sink, event)


class CallbackSink:
    def __init__(self, callback) -> None:
        self.callback = callback

    def publish(self, event: HostEvent) -> None:
        self.callback(event)
