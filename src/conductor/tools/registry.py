from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel

ToolHandler = Callable[..., Any]


@dataclass(slots=True)
class ToolSpec:
    name: str
    handler: ToolHandler
    args_model: type[BaseModel]
    description: str = ""
    mutating: bool = False
    requires_approval: bool = False
    timeout_s: float | None = None

    def schema(self) -> dict[str, Any]:
        parameters = self.args_model.model_json_schema()
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        args_model: type[BaseModel],
        description: str = "",
        mutating: bool = False,
        requires_approval: bool = False,
        timeout_s: float | None = None,
    ) -> ToolSpec:
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")
        spec = ToolSpec(
            name=name,
            handler=handler,
            args_model=args_model,
            description=description,
            mutating=mutating,
            requires_approval=requires_approval,
            timeout_s=timeout_s,
        )
        self._tools[name] = spec
        return spec

    def lookup(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    get = lookup

    def list_tools(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return sorted(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        return [spec.schema() for spec in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools
