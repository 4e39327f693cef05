from __future__ import annotations

from pathlib import Path

from conductor.tools.context import ToolContext
from conductor.tools.control import (
    ASK_FOLLOWUP_QUESTION,
    ATTEMPT_COMPLETION,
    CONTROL_TOOLS,
    AskFollowupQuestionArgs,
    AttemptCompletionArgs,
    ask_followup_question,
    attempt_completion,
)
from conductor.tools.dispatcher import ToolDispatcher
from conductor.tools.fs_tools import (
    ListFilesArgs,
    ReadFileArgs,
    WriteFileArgs,
    list_files,
    read_file,
    write_file,
)
from conductor.tools.registry import ToolRegistry, ToolSpec
from conductor.tools.sandbox import confine_path, resolve_under_root, validate_shell_cmd
from conductor.tools.settings import ToolSettings, default_tool_settings
from conductor.tools.shell_tool import ExecuteCommandArgs, execute_command
from conductor.tools.workspace import WorkspaceStorage


def build_default_registry(
    root: Path,
    settings: ToolSettings | None = None,
) -> ToolRegistry:
    tool_settings = settings or default_tool_settings(root)
    registry = ToolRegistry()
    registry.register(
        "read_file",
        read_file,
        args_model=ReadFileArgs,
        description="Read a UTF-8 text file from the workspace.",
    )
    registry.register(
        "list_files",
        list_files,
        args_model=ListFilesArgs,
        description="List entries of a workspace directory.",
    )
    registry.register(
        "write_file",
        write_file,
        args_model=WriteFileArgs,
        description="Create or overwrite a workspace file with the given content.",
        mutating=True,
    )
    registry.register(
        "execute_command",
        execute_command,
        args_model=ExecuteCommandArgs,
        description="Run an allow-listed command in the workspace root.",
        mutating=True,
        requires_approval=tool_settings.shell_requires_approval,
        timeout_s=tool_settings.shell_timeout_s + 5.0,
    )
    registry.register(
        ATTEMPT_COMPLETION,
        attempt_completion,
        args_model=AttemptCompletionArgs,
        description="Finish the task and report the result to the user.",
    )
    registry.register(
        ASK_FOLLOWUP_QUESTION,
        ask_followup_question,
        args_model=AskFollowupQuestionArgs,
        description="Ask the user a question and wait for the answer.",
    )
    return registry


__all__ = [
    "ASK_FOLLOWUP_QUESTION",
    "ATTEMPT_COMPLETION",
    "CONTROL_TOOLS",
    "ToolContext",
    "ToolDispatcher",
    "ToolRegistry",
    "ToolSettings",
    "ToolSpec",
    "WorkspaceStorage",
    "build_default_registry",
    "confine_path",
    "default_tool_settings",
    "resolve_under_root",
    "validate_shell_cmd",
]
