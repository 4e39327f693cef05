from __future__ import annotations

import json
from pathlib import Path

from conductor.runtime.notify import (
    STATE_CHANGED,
    TEXT_DELTA,
    WARNING,
    BufferedSink,
    CallbackSink,
    FanoutSink,
    HostEvent,
    TraceSink,
    safe_publish,
)


def test_buffered_sink_cursors_survive_eviction() -> None:
    sink = BufferedSink(max_events=3)
    for index in range(5):
        sink.publish(HostEvent(task_id="t1", kind=TEXT_DELTA, payload={"text": str(index)}))

    events, cursor = sink.events("t1")
    assert cursor == 5
    assert [event.payload["text"] for event in events] == ["2", "3", "4"]

    events, cursor = sink.events("t1", after=4)
    assert [event.payload["text"] for event in events] == ["4"]
    assert sink.events("t1", after=5) == ([], 5)
    assert sink.events("other") == ([], 0)


def test_failing_sink_does_not_break_fanout() -> None:
    received: list[HostEvent] = []

    def boom(event: HostEvent) -> None:
        raise RuntimeError("sink down")

    fanout = FanoutSink(CallbackSink(boom), CallbackSink(received.append))
    safe_publish(fanout, HostEvent(task_id="t1", kind=STATE_CHANGED))
    safe_publish(CallbackSink(boom), HostEvent(task_id="t1", kind=STATE_CHANGED))

    assert len(received) == 1


def test_trace_sink_skips_text_deltas(tmp_path: Path) -> None:
    sink = TraceSink(tmp_path)
    sink.publish(HostEvent(task_id="t1", kind=TEXT_DELTA, payload={"text": "x"}))
    sink.publish(HostEvent(task_id="t1", kind=STATE_CHANGED, payload={"to": "running"}))

    lines = (tmp_path / "t1.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["kind"] for line in lines] == ["host.stateChanged"]


def test_trace_sink_records_warning_payloads(tmp_path: Path) -> None:
    sink = TraceSink(tmp_path)
    sink.publish(
        HostEvent(task_id="t1", kind=WARNING, payload={"kind": "RateLimited", "attempt": 2})
    )

    (line,) = (tmp_path / "t1.jsonl").read_text(encoding="utf-8").splitlines()
    record = json.loads(line)
    assert record["kind"] == "host.warning"
    assert record["data"] == {"kind": "RateLimited", "attempt": 2}
