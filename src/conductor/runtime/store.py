from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any

from conductor.core.errors import TaskNotFound
from conductor.core.transcript import (
    Transcript,
    coerce_call,
    transcript_from_dict,
    transcript_to_dict,
)
from conductor.core.types import Task, TaskStatus, Transition, Usage


def write_json_atomic(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False, default=str))
        handle.flush()
        os.fsync(handle.fileno())
    temp_path.replace(path)
    return path


def task_to_dict(task: Task) -> dict[str, Any]:
    payload = asdict(task)
    payload["status"] = task.status.value
    return payload


def _ensure_str(value: Any, field_name: str, default: str | None = None) -> str:
    if value is None and default is not None:
        return default
    if isinstance(value, str):
        return value
    raise ValueError(f"task field '{field_name}' must be str")


def _ensure_float(value: Any, field_name: str) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ValueError(f"task field '{field_name}' must be a number")


def _coerce_usage(payload: Any) -> Usage:
    if payload is None:
        return Usage()
    if not isinstance(payload, dict):
        raise ValueError("task usage must be an object")
    return Usage(
        input_tokens=int(payload.get("input_tokens") or 0),
        output_tokens=int(payload.get("output_tokens") or 0),
    )


def _coerce_transitions(payload: Any) -> list[Transition]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise ValueError("task transitions must be a list")
    transitions: list[Transition] = []
    for item in payload:
        if not isinstance(item, dict):
            raise ValueError("task transitions entries must be objects")
        transitions.append(
            Transition(
                source=_ensure_str(item.get("source"), "transitions.source"),
                target=_ensure_str(item.get("target"), "transitions.target"),
                ts=_ensure_float(item.get("ts"), "transitions.ts"),
                reason=_ensure_str(item.get("reason"), "transitions.reason", default=""),
            )
        )
    return transitions


def _coerce_error(payload: Any) -> dict[str, str] | None:
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise ValueError("task last_error must be an object")
    return {"kind": str(payload.get("kind") or ""), "message": str(payload.get("message") or "")}


def task_from_dict(payload: Any) -> Task:
    if not isinstance(payload, dict):
        raise ValueError("task payload must be an object")
    try:
        status = TaskStatus(payload.get("status"))
    except ValueError as exc:
        raise ValueError(f"task status is invalid: {payload.get('status')!r}") from exc
    warnings = payload.get("warnings") or []
    if not isinstance(warnings, list) or not all(isinstance(item, str) for item in warnings):
        raise ValueError("task warnings must be list[str]")
    pending = payload.get("pending_calls") or []
    if not isinstance(pending, list):
        raise ValueError("task pending_calls must be a list")
    awaiting = payload.get("awaiting")
    summary = payload.get("summary")
    return Task(
        task_id=_ensure_str(payload.get("task_id"), "task_id"),
        goal=_ensure_str(payload.get("goal"), "goal"),
        workspace=_ensure_str(payload.get("workspace"), "workspace"),
        status=status,
        created_ts=_ensure_float(payload.get("created_ts"), "created_ts"),
        updated_ts=_ensure_float(payload.get("updated_ts"), "updated_ts"),
        usage=_coerce_usage(payload.get("usage")),
        summary=summary if isinstance(summary, str) else None,
        last_error=_coerce_error(payload.get("last_error")),
        warnings=list(warnings),
        pending_calls=[coerce_call(item) for item in pending],
        awaiting=coerce_call(awaiting) if awaiting is not None else None,
        consecutive_mistakes=int(payload.get("consecutive_mistakes") or 0),
        transitions=_coerce_transitions(payload.get("transitions")),
    )


class TaskStore:
    """Persists each task and its transcript as one JSON document."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self._lock = threading.Lock()

    def path(self, task_id: str) -> Path:
        return self.base_dir / f"{task_id}.json"

    def save(self, task: Task, transcript: Transcript) -> Path:
        payload = {"task": task_to_dict(task), "transcript": transcript_to_dict(transcript)}
        with self._lock:
            return write_json_atomic(self.path(task.task_id), payload)

    def exists(self, task_id: str) -> bool:
        return self.path(task_id).exists()

    def load(self, task_id: str) -> tuple[Task, Transcript]:
        path = self.path(task_id)
        if not path.exists():
            raise TaskNotFound(f"task {task_id} not found")
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("task document must be an object")
        task = task_from_dict(payload.get("task"))
        transcript = transcript_from_dict(payload.get("transcript"))
        return task, transcript

    def list_ids(self) -> list[str]:
        if not self.base_dir.exists():
            return []
        return sorted(path.stem for path in self.base_dir.glob("*.json"))

    def list_tasks(self) -> list[Task]:
        tasks: list[Task] = []
        for task_id in self.list_ids():
            try:
                task, _ = self.load(task_id)
            except (ValueError, OSError, TaskNotFound):
                continue
            tasks.append(task)
        tasks.sort(key=lambda item: item.created_ts)
        return tasks

    def delete(self, task_id: str) -> bool:
        path = self.path(task_id)
        if not path.exists():
            return False
        path.unlink()
        return True
