"""Normalizes a provider client's raw chunk stream into engine events.

Clients yield OpenAI-style ``chat.completion.chunk`` dicts. The gateway turns
them into an ordered stream of ``TextDelta``, ``ToolCallRequested``,
``UsageReported`` and exactly one terminal ``Completed`` or ``ProviderError``.
It never retries; that is the controller's job.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Union

from conductor.core.cancellation import CancellationToken
from conductor.core.errors import (
    AUTH_INVALID,
    CONTENT_FILTERED,
    MODEL_UNAVAILABLE,
    NETWORK_INTERRUPTED,
    RATE_LIMITED,
    UNKNOWN_PROVIDER_ERROR,
    ProviderClientError,
)
from conductor.core.types import UNPARSED_ARGUMENTS_KEY, ToolCall, Turn

logger = logging.getLogger(__name__)

RETRYABLE_KINDS = frozenset({RATE_LIMITED, NETWORK_INTERRUPTED})

_STATUS_KINDS: dict[int, str] = {
    401: AUTH_INVALID,
    403: AUTH_INVALID,
    404: MODEL_UNAVAILABLE,
    408: NETWORK_INTERRUPTED,
    429: RATE_LIMITED,
    500: NETWORK_INTERRUPTED,
    502: NETWORK_INTERRUPTED,
    503: NETWORK_INTERRUPTED,
    504: NETWORK_INTERRUPTED,
}

_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "incorrect api key",
    "authentication",
)
_MODEL_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "does not exist",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "quota",
    "try again later",
)
_FILTER_PATTERNS: tuple[str, ...] = (
    "content filter",
    "content_filter",
    "content policy",
    "safety system",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "connection aborted",
    "connection refused",
    "broken pipe",
    "timed out",
    "temporarily unavailable",
    "network error",
    "incomplete read",
    "remote end closed",
)


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallRequested:
    call: ToolCall


@dataclass(frozen=True, slots=True)
class UsageReported:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True, slots=True)
class Completed:
    finish_reason: str


@dataclass(frozen=True, slots=True)
class ProviderError:
    kind: str
    retryable: bool
    message: str


ProviderEvent = Union[TextDelta, ToolCallRequested, UsageReported, Completed, ProviderError]


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def classify_message(message: str) -> str:
    haystack = message.lower()
    if _first_match(haystack, _AUTH_PATTERNS):
        return AUTH_INVALID
    if _first_match(haystack, _MODEL_PATTERNS):
        return MODEL_UNAVAILABLE
    if _first_match(haystack, _RATE_LIMIT_PATTERNS):
        return RATE_LIMITED
    if _first_match(haystack, _FILTER_PATTERNS):
        return CONTENT_FILTERED
    if _first_match(haystack, _NETWORK_PATTERNS):
        return NETWORK_INTERRUPTED
    return UNKNOWN_PROVIDER_ERROR


def classify_status(status_code: int | None) -> str | None:
    if status_code is None:
        return None
    kind = _STATUS_KINDS.get(status_code)
    if kind is None and status_code >= 500:
        return NETWORK_INTERRUPTED
    return kind


def classify_provider_exception(exc: BaseException) -> ProviderError:
    """Map a client exception onto the provider error taxonomy."""
    message = str(exc) or exc.__class__.__name__
    status: int | None = None
    if isinstance(exc, ProviderClientError):
        status = exc.status_code
    elif isinstance(exc, urllib.error.HTTPError):
        status = exc.code
    kind = classify_status(status)
    if kind is None:
        if isinstance(exc, (urllib.error.URLError, ConnectionError, TimeoutError, socket.timeout)):
            kind = NETWORK_INTERRUPTED
        else:
            kind = classify_message(message)
            if kind == UNKNOWN_PROVIDER_ERROR and isinstance(exc, OSError):
                kind = NETWORK_INTERRUPTED
    return ProviderError(kind=kind, retryable=kind in RETRYABLE_KINDS, message=message)


@dataclass(slots=True)
class _PartialCall:
    index: int
    call_id: str = ""
    name: str = ""
    fragments: list[str] = field(default_factory=list)

    def build(self) -> ToolCall:
        raw = "".join(self.fragments)
        return ToolCall(
            id=self.call_id or f"call_{uuid.uuid4().hex[:12]}",
            name=self.name,
            arguments=parse_arguments(raw),
        )


def parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {UNPARSED_ARGUMENTS_KEY: str(raw)}
    if not isinstance(parsed, dict):
        return {UNPARSED_ARGUMENTS_KEY: str(raw)}
    return parsed


def _chunk_error(chunk: dict[str, Any]) -> ProviderError | None:
    error = chunk.get("error")
    if error is None:
        return None
    if isinstance(error, dict):
        message = str(error.get("message") or error.get("type") or "provider error")
        code = error.get("code")
        status = code if isinstance(code, int) else None
    else:
        message = str(error)
        status = None
    kind = classify_status(status) or classify_message(message)
    return ProviderError(kind=kind, retryable=kind in RETRYABLE_KINDS, message=message)


def _usage_event(chunk: dict[str, Any]) -> UsageReported | None:
    usage = chunk.get("usage")
    if not isinstance(usage, dict):
        return None
    prompt = usage.get("prompt_tokens", usage.get("input_tokens", 0))
    completion = usage.get("completion_tokens", usage.get("output_tokens", 0))
    try:
        return UsageReported(input_tokens=int(prompt or 0), output_tokens=int(completion or 0))
    except (TypeError, ValueError):
        return None


class StreamNormalizer:
    """Incremental chunk-to-event state machine for a single response."""

    def __init__(self) -> None:
        self.partials: dict[int, _PartialCall] = {}
        self.emitted: set[int] = set()
        self.finish_reason: str | None = None

    def feed(self, chunk: dict[str, Any]) -> list[ProviderEvent]:
        events: list[ProviderEvent] = []
        if not isinstance(chunk, dict):
            return events
        error = _chunk_error(chunk)
        if error is not None:
            return [error]
        choices = chunk.get("choices")
        if isinstance(choices, list):
            for choice in choices:
                if not isinstance(choice, dict):
                    continue
                delta = choice.get("delta")
                if isinstance(delta, dict):
                    content = delta.get("content")
                    if isinstance(content, str) and content:
                        events.append(TextDelta(text=content))
                    fragments = delta.get("tool_calls")
                    if isinstance(fragments, list):
                        events.extend(self._feed_tool_calls(fragments))
                elif isinstance(choice.get("text"), str) and choice["text"]:
                    events.append(TextDelta(text=choice["text"]))
                reason = choice.get("finish_reason")
                if isinstance(reason, str) and reason:
                    self.finish_reason = reason
        usage = _usage_event(chunk)
        if usage is not None:
            events.append(usage)
        return events

    def _feed_tool_calls(self, fragments: list[Any]) -> list[ProviderEvent]:
        events: list[ProviderEvent] = []
        for position, fragment in enumerate(fragments):
            if not isinstance(fragment, dict):
                continue
            index = fragment.get("index")
            if not isinstance(index, int):
                index = position
            # A fragment for a later index means earlier calls are complete.
            events.extend(self._flush(below=index))
            partial = self.partials.setdefault(index, _PartialCall(index=index))
            if isinstance(fragment.get("id"), str) and fragment["id"]:
                partial.call_id = fragment["id"]
            function = fragment.get("function")
            if isinstance(function, dict):
                if isinstance(function.get("name"), str) and function["name"]:
                    partial.name += function["name"]
                arguments = function.get("arguments")
                if isinstance(arguments, str):
                    partial.fragments.append(arguments)
                elif isinstance(arguments, dict):
                    partial.fragments.append(json.dumps(arguments))
        return events

    def _flush(self, below: int | None = None) -> list[ProviderEvent]:
        events: list[ProviderEvent] = []
        for index in sorted(self.partials):
            if below is not None and index >= below:
                break
            if index in self.emitted:
                continue
            self.emitted.add(index)
            events.append(ToolCallRequested(call=self.partials[index].build()))
        return events

    def finish(self) -> list[ProviderEvent]:
        if self.finish_reason is None:
            return [
                ProviderError(
                    kind=NETWORK_INTERRUPTED,
                    retryable=True,
                    message="stream ended without a finish signal",
                )
            ]
        if self.finish_reason == "content_filter":
            return [
                ProviderError(
                    kind=CONTENT_FILTERED,
                    retryable=False,
                    message="response blocked by the provider content filter",
                )
            ]
        events = self._flush()
        events.append(Completed(finish_reason=self.finish_reason))
        return events


class ProviderGateway:
    def __init__(self, client: Any) -> None:
        self.client = client

    def stream(
        self,
        turns: list[Turn],
        tool_schemas: list[dict[str, Any]] | None = None,
        cancel: CancellationToken | None = None,
        purpose: str = "task",
    ) -> Iterator[ProviderEvent]:
        """Yield normalized events; stops silently once ``cancel`` is set."""
        normalizer = StreamNormalizer()
        chunks: Iterable[dict[str, Any]] | None = None
        try:
            chunks = self.client.stream_completion(
                turns, tool_schemas or [], cancel=cancel, purpose=purpose
            )
            for chunk in chunks:
                if cancel is not None and cancel.cancelled:
                    return
                for event in normalizer.feed(chunk):
                    yield event
                    if isinstance(event, ProviderError):
                        return
        except Exception as exc:  # noqa: BLE001
            if cancel is not None and cancel.cancelled:
                return
            error = classify_provider_exception(exc)
            if error.kind == UNKNOWN_PROVIDER_ERROR:
                logger.warning("unclassified provider failure: %s", error.message)
            yield error
            return
        finally:
            close = getattr(chunks, "close", None)
            if callable(close):
                close()
        if cancel is not None and cancel.cancelled:
            return
        yield from normalizer.finish()
