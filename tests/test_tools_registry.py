from __future__ import annotations

import pytest
from pydantic import BaseModel

from conductor.tools import build_default_registry
from conductor.tools.registry import ToolRegistry
from conductor.tools.settings import ToolSettings


class _EchoArgs(BaseModel):
    text: str


def test_tool_registry_register_and_lookup() -> None:
    registry = ToolRegistry()

    def handler(args: _EchoArgs) -> dict[str, str]:
        return {"text": args.text}

    registry.register("echo", handler, args_model=_EchoArgs, description="Echo text.")

    spec = registry.get("echo")
    assert spec is not None
    assert spec.name == "echo"
    assert spec.handler is handler
    assert [tool.name for tool in registry.list_tools()] == ["echo"]
    assert "echo" in registry

    with pytest.raises(ValueError):
        registry.register("echo", handler, args_model=_EchoArgs)


def test_schema_uses_pydantic_model() -> None:
    registry = ToolRegistry()
    registry.register("echo", lambda args: args, args_model=_EchoArgs, description="Echo text.")

    (schema,) = registry.schemas()

    assert schema["type"] == "function"
    assert schema["function"]["name"] == "echo"
    parameters = schema["function"]["parameters"]
    assert "title" not in parameters
    assert parameters["required"] == ["text"]
    assert parameters["properties"]["text"]["type"] == "string"


def test_default_registry_flags(tmp_path) -> None:
    registry = build_default_registry(tmp_path)
    assert registry.names() == [
        "ask_followup_question",
        "attempt_completion",
        "execute_command",
        "list_files",
        "read_file",
        "write_file",
    ]
    assert registry.get("write_file").mutating
    assert not registry.get("read_file").mutating
    assert registry.get("execute_command").requires_approval

    relaxed = build_default_registry(tmp_path, ToolSettings(shell_requires_approval=False))
    assert not relaxed.get("execute_command").requires_approval
