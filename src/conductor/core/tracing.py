from __future__ import annotations

import json
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class TraceEvent:
    ts: float
    kind: str
    data: dict[str, Any] = field(default_factory=dict)


class TraceWriter:
    def __init__(self, task_id: str, base_dir: Path | None = None) -> None:
        self.task_id = task_id
        self.base_dir = base_dir or Path("data") / "traces"
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self.base_dir / f"{self.task_id}.jsonl"

    def write(self, event: TraceEvent) -> Path:
        payload = json.dumps(asdict(event), ensure_ascii=False, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(payload + "\n")
        return self.path

    def emit(self, kind: str, /, **data: Any) -> Path:
        return self.write(TraceEvent(ts=time.time(), kind=kind, data=data))


def read_trace(path: Path) -> list[TraceEvent]:
    if not path.exists():
        return []
    events: list[TraceEvent] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict) or not isinstance(payload.get("kind"), str):
            continue
        data = payload.get("data")
        events.append(
            TraceEvent(
                ts=float(payload.get("ts") or 0.0),
                kind=payload["kind"],
                data=data if isinstance(data, dict) else {},
            )
        )
    return events
