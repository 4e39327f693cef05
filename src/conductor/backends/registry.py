from __future__ import annotations

from collections.abc import Callable
from typing import Any, Iterator, Protocol

from conductor.core.cancellation import CancellationToken
from conductor.core.types import Turn


class ProviderClient(Protocol):
    def stream_completion(
        self,
        turns: list[Turn],
        tool_schemas: list[dict[str, Any]],
        cancel: CancellationToken | None = None,
        purpose: str = "task",
    ) -> Iterator[dict[str, Any]]:
        ...


_BACKENDS: dict[str, Callable[..., ProviderClient]] = {}


def register_backend(name: str, factory: Callable[..., ProviderClient]) -> None:
    key = name.lower()
    if key in _BACKENDS:
        raise ValueError(f"Backend '{name}' is already registered")
    _BACKENDS[key] = factory


def get_backend(name: str, **kwargs: Any) -> ProviderClient:
    key = name.lower()
    factory = _BACKENDS.get(key)
    if factory is None:
        available = ", ".join(list_backends())
        raise ValueError(f"Unknown backend '{name}'. Available backends: {available}")
    return factory(**kwargs)


def list_backends() -> list[str]:
    return sorted(_BACKENDS)
