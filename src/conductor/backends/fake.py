from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, List

from conductor.backends.registry import register_backend
from conductor.core.cancellation import CancellationToken
from conductor.core.errors import ProviderClientError
from conductor.core.types import Turn

# A scripted step is a list of raw chunks; an exception instance inside the
# list is raised when the stream reaches it, and a bare exception is raised
# before any chunk is produced.
Step = Any


def _chunk(delta: dict[str, Any] | None = None, finish_reason: str | None = None) -> dict[str, Any]:
    return {
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}],
    }


def _split(text: str, size: int) -> list[str]:
    if not text:
        return []
    return [text[index : index + size] for index in range(0, len(text), size)]


def usage_chunk(input_tokens: int, output_tokens: int) -> dict[str, Any]:
    return {
        "object": "chat.completion.chunk",
        "choices": [],
        "usage": {"prompt_tokens": input_tokens, "completion_tokens": output_tokens},
    }


def text_response(
    text: str,
    finish_reason: str = "stop",
    chunk_size: int = 8,
    usage: tuple[int, int] | None = None,
) -> list[Any]:
    chunks: list[Any] = [_chunk({"role": "assistant"})]
    chunks.extend(_chunk({"content": piece}) for piece in _split(text, chunk_size))
    chunks.append(_chunk(finish_reason=finish_reason))
    if usage is not None:
        chunks.append(usage_chunk(*usage))
    return chunks


def tool_call_response(
    name: str,
    arguments: dict[str, Any] | str,
    call_id: str | None = None,
    text: str = "",
    chunk_size: int = 12,
    extra_calls: Iterable[tuple[str, dict[str, Any] | str]] = (),
    usage: tuple[int, int] | None = None,
) -> list[Any]:
    chunks: list[Any] = [_chunk({"role": "assistant"})]
    chunks.extend(_chunk({"content": piece}) for piece in _split(text, chunk_size))
    calls = [(name, arguments)] + list(extra_calls)
    for index, (call_name, call_args) in enumerate(calls):
        raw = call_args if isinstance(call_args, str) else json.dumps(call_args)
        identifier = call_id if (index == 0 and call_id) else f"call_{uuid.uuid4().hex[:8]}"
        head = {
            "index": index,
            "id": identifier,
            "type": "function",
            "function": {"name": call_name, "arguments": ""},
        }
        chunks.append(_chunk({"tool_calls": [head]}))
        for piece in _split(raw, chunk_size):
            chunks.append(
                _chunk({"tool_calls": [{"index": index, "function": {"arguments": piece}}]})
            )
    chunks.append(_chunk(finish_reason="tool_calls"))
    if usage is not None:
        chunks.append(usage_chunk(*usage))
    return chunks


def dropped_response(text: str = "", error: Exception | None = None) -> list[Any]:
    """A stream that breaks off before its finish signal."""
    chunks: list[Any] = [_chunk({"role": "assistant"})]
    chunks.extend(_chunk({"content": piece}) for piece in _split(text, 8))
    if error is not None:
        chunks.append(error)
    return chunks


def step_from_dict(payload: Any) -> Step:
    if not isinstance(payload, dict):
        raise ValueError("fake script steps must be objects")
    if "error" in payload:
        error = payload["error"]
        if not isinstance(error, dict):
            raise ValueError("fake script error must be an object")
        status = error.get("status")
        return ProviderClientError(
            str(error.get("message") or "fake provider error"),
            status_code=status if isinstance(status, int) else None,
        )
    text = payload.get("text", "")
    if not isinstance(text, str):
        raise ValueError("fake script text must be a string")
    if payload.get("drop"):
        return dropped_response(text, ConnectionResetError("connection reset by peer"))
    calls = payload.get("tool_calls")
    if calls:
        if not isinstance(calls, list) or not all(isinstance(item, dict) for item in calls):
            raise ValueError("fake script tool_calls must be a list of objects")
        first, rest = calls[0], calls[1:]
        return tool_call_response(
            str(first.get("name")),
            first.get("arguments") or {},
            call_id=first.get("id"),
            text=text,
            extra_calls=[(str(item.get("name")), item.get("arguments") or {}) for item in rest],
        )
    return text_response(text)


def load_script(raw: str) -> list[Step]:
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("fake script must be a JSON list")
    return [step_from_dict(item) for item in data]


@dataclass(slots=True)
class FakeProvider:
    steps: List[Step] = field(default_factory=list)
    purpose_steps: dict[str, List[Step]] = field(default_factory=dict)
    calls: List[dict[str, Any]] = field(default_factory=list)
    gate: threading.Event | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def extend(self, steps: Iterable[Step]) -> None:
        with self._lock:
            self.steps.extend(steps)

    def extend_purpose(self, purpose: str, steps: Iterable[Step]) -> None:
        with self._lock:
            self.purpose_steps.setdefault(purpose, []).extend(steps)

    def _next_step(self, purpose: str) -> Step:
        with self._lock:
            queue = self.purpose_steps.get(purpose)
            if queue:
                return queue.pop(0)
            if self.steps:
                return self.steps.pop(0)
        raise ProviderClientError("fake provider script is exhausted")

    def stream_completion(
        self,
        turns: list[Turn],
        tool_schemas: list[dict[str, Any]],
        cancel: CancellationToken | None = None,
        purpose: str = "task",
    ) -> Iterator[dict[str, Any]]:
        self.calls.append(
            {
                "purpose": purpose,
                "turns": list(turns),
                "tools": [schema["function"]["name"] for schema in tool_schemas],
            }
        )
        step = self._next_step(purpose)
        if isinstance(step, BaseException):
            raise step
        return self._iterate(list(step), cancel)

    def _iterate(
        self, chunks: list[Any], cancel: CancellationToken | None
    ) -> Iterator[dict[str, Any]]:
        for chunk in chunks:
            if self.gate is not None:
                self.gate.wait()
            if cancel is not None and cancel.cancelled:
                return
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk


def _factory(**_kwargs: Any) -> FakeProvider:
    provider = FakeProvider()
    script = os.getenv("CONDUCTOR_FAKE_SCRIPT")
    if script:
        provider.steps = load_script(script)
    return provider


register_backend("fake", _factory)
