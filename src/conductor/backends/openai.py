from __future__ import annotations

import json
import logging
import os
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from conductor.backends.registry import register_backend
from conductor.core.cancellation import CancellationToken
from conductor.core.errors import ProviderClientError
from conductor.core.types import Turn

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _result_content(turn: Turn) -> str:
    result = turn.result
    if result is None:
        return ""
    if result.ok:
        payload = result.payload
        if isinstance(payload, str):
            return payload
        return json.dumps(payload, ensure_ascii=False, default=str)
    return f"ERROR {result.error_kind}: {result.message}"


def _user_content(turn: Turn) -> str | list[dict[str, Any]]:
    images = [block.ref for block in turn.blocks if block.kind == "image" and block.ref]
    if not images:
        return turn.text
    parts: list[dict[str, Any]] = []
    if turn.text:
        parts.append({"type": "text", "text": turn.text})
    parts.extend({"type": "image_url", "image_url": {"url": ref}} for ref in images)
    return parts


def turns_to_messages(turns: Iterable[Turn]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for turn in turns:
        if turn.role == "system":
            messages.append({"role": "system", "content": turn.text})
        elif turn.role == "user":
            messages.append({"role": "user", "content": _user_content(turn)})
        elif turn.role == "assistant":
            messages.append({"role": "assistant", "content": turn.text})
        elif turn.role == "tool_call":
            call = turn.call
            if call is None:
                continue
            entry = {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": json.dumps(call.arguments, ensure_ascii=False),
                },
            }
            previous = messages[-1] if messages else None
            if (
                previous is not None
                and previous["role"] == "assistant"
                and "tool_calls" not in previous
            ):
                previous["tool_calls"] = [entry]
            else:
                messages.append({"role": "assistant", "content": None, "tool_calls": [entry]})
        elif turn.role == "tool_result":
            result = turn.result
            if result is None:
                continue
            messages.append(
                {"role": "tool", "tool_call_id": result.tool_call_id, "content": _result_content(turn)}
            )
    return messages


def _iter_sse_payloads(lines: Iterable[bytes]) -> Iterator[str]:
    for raw_line in lines:
        stripped = raw_line.decode("utf-8").strip()
        if not stripped or not stripped.startswith("data:"):
            continue
        yield stripped[len("data:") :].strip()


def _error_message(body: str, fallback: str) -> str:
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body.strip() or fallback
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return fallback


@dataclass(slots=True)
class OpenAIClient:
    """Streaming client for OpenAI-compatible ``/v1/chat/completions`` servers."""

    base_url: str = field(
        default_factory=lambda: os.getenv("CONDUCTOR_OPENAI_BASE_URL", "https://api.openai.com")
    )
    api_key: str | None = field(
        default_factory=lambda: os.getenv("CONDUCTOR_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY")
    )
    model: str | None = field(
        default_factory=lambda: os.getenv("CONDUCTOR_OPENAI_MODEL", "gpt-4o-mini")
    )
    timeout_s: float = field(
        default_factory=lambda: _env_float("CONDUCTOR_OPENAI_TIMEOUT_S", 120.0)
    )
    max_tokens: int = field(default_factory=lambda: _env_int("CONDUCTOR_OPENAI_MAX_TOKENS", 4096))
    temperature: float = field(
        default_factory=lambda: _env_float("CONDUCTOR_OPENAI_TEMPERATURE", 0.0)
    )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.endswith("/v1"):
            return f"{base}/chat/completions"
        return f"{base}/v1/chat/completions"

    def build_payload(
        self,
        turns: list[Turn],
        tool_schemas: list[dict[str, Any]],
        purpose: str = "task",
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messages": turns_to_messages(turns),
            "stream": True,
            "stream_options": {"include_usage": True},
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if self.model:
            payload["model"] = self.model
        if tool_schemas and purpose == "task":
            payload["tools"] = tool_schemas
            payload["tool_choice"] = "auto"
        return payload

    def stream_completion(
        self,
        turns: list[Turn],
        tool_schemas: list[dict[str, Any]],
        cancel: CancellationToken | None = None,
        purpose: str = "task",
    ) -> Iterator[dict[str, Any]]:
        payload = self.build_payload(turns, tool_schemas, purpose)
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._url(), data=data, headers=self._headers(), method="POST"
        )
        try:
            response = self._open(request, cancel)
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace") if exc.fp is not None else ""
            raise ProviderClientError(
                _error_message(body, f"HTTP {exc.code}"), status_code=exc.code
            ) from exc
        if response is None:
            return iter(())
        if cancel is not None and cancel.cancelled:
            response.close()
            return iter(())
        return self._read(response, cancel)

    def _open(self, request: urllib.request.Request, cancel: CancellationToken | None) -> Any:
        """Open the request; returns None when ``cancel`` fires before the server answers.

        The connect and header wait run on a helper thread so cancellation does
        not have to wait for ``timeout_s``. A response that arrives after the
        caller gave up is closed.
        """
        if cancel is None:
            return urllib.request.urlopen(request, timeout=self.timeout_s)
        if cancel.cancelled:
            return None
        outcome: dict[str, Any] = {}
        lock = threading.Lock()
        done = threading.Event()

        def _target() -> None:
            try:
                response = urllib.request.urlopen(request, timeout=self.timeout_s)
            except Exception as exc:  # noqa: BLE001
                outcome["error"] = exc
            else:
                with lock:
                    abandoned = outcome.get("abandoned", False)
                    if not abandoned:
                        outcome["response"] = response
                if abandoned:
                    response.close()
            finally:
                done.set()

        def _abandon() -> None:
            with lock:
                outcome["abandoned"] = True
                response = outcome.pop("response", None)
            if response is not None:
                response.close()
            done.set()

        worker = threading.Thread(target=_target, name="openai-request", daemon=True)
        worker.start()
        unregister = cancel.on_cancel(_abandon)
        try:
            done.wait()
        finally:
            unregister()
        with lock:
            if outcome.get("abandoned"):
                return None
            error = outcome.get("error")
            if error is not None:
                raise error
            return outcome["response"]

    def _read(self, response: Any, cancel: CancellationToken | None) -> Iterator[dict[str, Any]]:
        unregister = cancel.on_cancel(response.close) if cancel is not None else (lambda: None)
        try:
            with response:
                for sse_payload in _iter_sse_payloads(response):
                    if sse_payload == "[DONE]":
                        return
                    try:
                        chunk = json.loads(sse_payload)
                    except json.JSONDecodeError:
                        logger.debug("skipping malformed SSE payload: %s", sse_payload[:200])
                        continue
                    if isinstance(chunk, dict):
                        yield chunk
        finally:
            unregister()


register_backend("openai", OpenAIClient)
