from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ALLOWED_COMMANDS = (
    "ls",
    "cat",
    "echo",
    "pwd",
    "python",
    "python3",
    "pytest",
    "rg",
    "grep",
    "head",
    "tail",
    "wc",
    "sort",
    "diff",
    "git",
    "true",
    "false",
    "sleep",
)
DEFAULT_DENY_TOKENS = (
    "sudo",
    "chmod",
    "chown",
    "mkfs",
    "dd",
    ":(){",
    "curl",
    "wget",
)


@dataclass(slots=True)
class ToolSettings:
    allowed_commands: set[str] = field(default_factory=lambda: set(DEFAULT_ALLOWED_COMMANDS))
    deny_tokens: set[str] = field(default_factory=lambda: set(DEFAULT_DENY_TOKENS))
    read_max_bytes: int = 200_000
    list_max_entries: int = 500
    shell_max_output_chars: int = 20_000
    shell_timeout_s: float = 60.0
    shell_requires_approval: bool = True
    ignore_names: set[str] = field(default_factory=lambda: {".git"})

    def __post_init__(self) -> None:
        self.deny_tokens = {item.lower() for item in self.deny_tokens}


def default_tool_settings(root: Path | None = None) -> ToolSettings:
    return ToolSettings()
