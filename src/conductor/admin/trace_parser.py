from __future__ import annotations

import json
from pathlib import Path
from typing import Any

_TOOL_FIELDS = {"call_id", "tool", "args", "ok", "error_kind", "message"}


def _parse_line(line: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _empty() -> dict[str, Any]:
    return {
        "events": [],
        "states": [],
        "requests": [],
        "tool_calls": [],
        "retries": [],
        "checkpoints": [],
        "final_state": None,
    }


def _tool_entry(call_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "call_id": call_id,
        "tool": data.get("tool"),
        "args": data.get("args"),
        "ok": None,
        "error_kind": None,
        "message": None,
        "started_ts": None,
        "finished_ts": None,
        "metadata": {},
    }


def parse_trace_file(path: Path) -> dict[str, Any]:
    """Group a task trace into state changes, model requests and tool calls."""
    if not path.exists():
        return _empty()

    parsed = _empty()
    tool_calls: dict[str, dict[str, Any]] = {}
    pending_request: dict[str, Any] | None = None

    for line in path.read_text(encoding="utf-8").splitlines():
        payload = _parse_line(line)
        if payload is None:
            continue
        ts = payload.get("ts")
        kind = payload.get("kind")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        event = {"ts": ts, "kind": kind, "data": data}
        parsed["events"].append(event)

        if kind == "state":
            parsed["states"].append(
                {
                    "ts": ts,
                    "from": data.get("source"),
                    "to": data.get("target"),
                    "reason": data.get("reason"),
                }
            )
            parsed["final_state"] = data.get("target")
        elif kind == "llm_req":
            pending_request = {
                "attempt": data.get("attempt"),
                "started_ts": ts,
                "turns": data.get("turns"),
                "outcome": None,
                "latency_ms": None,
                "finish_reason": None,
                "error_kind": None,
            }
            parsed["requests"].append(pending_request)
        elif kind in {"llm_done", "llm_error"}:
            if pending_request is None:
                pending_request = {"attempt": data.get("attempt"), "started_ts": None, "turns": None}
                parsed["requests"].append(pending_request)
            if kind == "llm_done":
                pending_request.update(
                    outcome="done",
                    latency_ms=data.get("latency_ms"),
                    finish_reason=data.get("finish_reason"),
                )
            else:
                pending_request.update(outcome="error", error_kind=data.get("error_kind"))
            pending_request = None
        elif kind == "retry":
            parsed["retries"].append(
                {"ts": ts, "attempt": data.get("attempt"), "kind": data.get("error_kind")}
            )
        elif kind == "checkpoint":
            parsed["checkpoints"].append(
                {
                    "ts": ts,
                    "action": data.get("action"),
                    "checkpoint_id": data.get("checkpoint_id"),
                }
            )
        elif kind in {"tool_start", "tool_done"}:
            call_id = data.get("call_id")
            if not isinstance(call_id, str):
                continue
            entry = tool_calls.setdefault(call_id, _tool_entry(call_id, data))
            if kind == "tool_start":
                entry["started_ts"] = ts
                entry["args"] = data.get("args", entry["args"])
                continue
            entry.update(
                tool=data.get("tool", entry["tool"]),
                ok=data.get("ok"),
                error_kind=data.get("error_kind"),
                message=data.get("message"),
                finished_ts=ts,
            )
            metadata = {key: value for key, value in data.items() if key not in _TOOL_FIELDS}
            if metadata:
                entry["metadata"] = metadata

    parsed["tool_calls"] = sorted(
        tool_calls.values(), key=lambda item: item.get("started_ts") or item.get("finished_ts") or 0
    )
    return parsed
