from __future__ import annotations

import json
from pathlib import Path

from conductor.core.tracing import TraceEvent, TraceWriter, read_trace


def test_trace_writer_emits_jsonl(tmp_path: Path) -> None:
    writer = TraceWriter("task-1", base_dir=tmp_path / "data" / "traces")
    event = TraceEvent(kind="note", ts=123.0, data={"ok": True})

    path = writer.write(event)

    assert path.exists()
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    parsed = json.loads(lines[0])
    assert parsed["kind"] == "note"
    assert parsed["ts"] == 123.0
    assert parsed["data"] == {"ok": True}


def test_read_trace_skips_bad_lines(tmp_path: Path) -> None:
    writer = TraceWriter("task-1", base_dir=tmp_path)
    writer.emit("state", source="idle", target="running")
    with writer.path.open("a", encoding="utf-8") as handle:
        handle.write("{broken\n\n")
        handle.write(json.dumps({"ts": 1.0}) + "\n")
    writer.emit("tool_done", call_id="c1", ok=True)

    events = read_trace(writer.path)

    assert [event.kind for event in events] == ["state", "tool_done"]
    assert events[0].data == {"source": "idle", "target": "running"}
    assert read_trace(tmp_path / "missing.jsonl") == []


def test_emit_keeps_a_kind_field_in_data(tmp_path: Path) -> None:
    writer = TraceWriter("task-1", base_dir=tmp_path)

    writer.emit("host.warning", kind="NetworkInterrupted", attempt=1)

    (event,) = read_trace(writer.path)
    assert event.kind == "host.warning"
    assert event.data == {"kind": "NetworkInterrupted", "attempt": 1}
