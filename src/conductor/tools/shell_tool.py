from __future__ import annotations

import logging
import subprocess
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from conductor.core.errors import TaskCancelled
from conductor.tools.context import ToolContext
from conductor.tools.sandbox import split_shell_cmd

logger = logging.getLogger(__name__)

_POLL_INTERVAL_S = 0.05


class ExecuteCommandArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str = Field(description="Command line to run in the workspace root.")
    timeout_s: float | None = Field(default=None, gt=0)


def execute_command(args: ExecuteCommandArgs, context: ToolContext) -> dict[str, Any]:
    settings = context.settings
    argv, reason = split_shell_cmd(args.command, settings.allowed_commands, settings.deny_tokens)
    if argv is None:
        raise ValueError(reason or "command rejected")
    timeout_s = args.timeout_s or settings.shell_timeout_s

    process = subprocess.Popen(
        argv,
        cwd=context.root,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        text=True,
    )
    unregister = context.cancel.on_cancel(process.kill)
    try:
        waited = 0.0
        while True:
            try:
                stdout, stderr = process.communicate(timeout=_POLL_INTERVAL_S)
                break
            except subprocess.TimeoutExpired:
                waited += _POLL_INTERVAL_S
            if context.cancel.cancelled:
                process.kill()
                process.communicate()
                raise TaskCancelled()
            if waited >= timeout_s:
                process.kill()
                process.communicate()
                raise RuntimeError(f"command timed out after {timeout_s:g}s")
    finally:
        unregister()
    context.cancel.raise_if_cancelled()

    limit = settings.shell_max_output_chars
    return {
        "command": args.command,
        "returncode": process.returncode,
        "stdout": stdout[:limit],
        "stderr": stderr[:limit],
    }
