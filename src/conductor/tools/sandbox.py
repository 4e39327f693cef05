from __future__ import annotations

import shlex
from pathlib import Path
from typing import Iterable, Optional, Tuple

_METACHARACTERS = frozenset({"$", "`", "\n", "|", "&", ">", "<"})


def resolve_under_root(root: Path, user_path: str) -> Optional[Path]:
    """
    Return an absolute Path under `root` for `user_path`, or None if it
    escapes the workspace. Absolute paths are rejected; '..' is resolved
    before the containment check, so symlinks pointing outside are caught.
    """
    if not isinstance(user_path, str) or not user_path:
        return None
    root_abs = root.resolve(strict=False)
    candidate = Path(user_path)
    if candidate.is_absolute():
        return None
    resolved = (root_abs / candidate).resolve(strict=False)
    try:
        resolved.relative_to(root_abs)
    except ValueError:
        return None
    return resolved


def confine_path(root: Path, user_path: str) -> Path:
    if "\x00" in user_path:
        raise ValueError("path contains NUL byte")
    resolved = resolve_under_root(root, user_path or ".")
    if resolved is None:
        raise ValueError(f"path escapes the workspace: {user_path}")
    return resolved


def split_shell_cmd(
    cmd: str,
    allowed_commands: Iterable[str],
    deny_tokens: Iterable[str],
) -> Tuple[Optional[list[str]], Optional[str]]:
    """
    Tokenize `cmd` under a conservative policy: no shell metacharacters,
    first token on the allow-list, no token equal to or starting with a
    denied token. Returns (argv, None) or (None, reason).
    """
    if not isinstance(cmd, str):
        return None, "command must be a string"
    text = cmd.strip()
    if not text:
        return None, "empty command"

    in_quote: str | None = None
    for ch in text:
        if ch in {"'", '"'}:
            if in_quote == ch:
                in_quote = None
            elif in_quote is None:
                in_quote = ch
            continue
        if ch in _METACHARACTERS:
            return None, "shell metacharacters are not allowed"
        if ch == ";" and in_quote is None:
            return None, "shell metacharacters are not allowed"

    try:
        tokens = shlex.split(text)
    except ValueError:
        return None, "failed to parse command"
    if not tokens:
        return None, "empty command"

    if tokens[0] not in set(allowed_commands):
        return None, f"command '{tokens[0]}' not allowed"

    denied = {item.lower() for item in deny_tokens}
    for token in (item.lower() for item in tokens):
        for bad in denied:
            if token == bad or token.startswith(bad):
                return None, f"disallowed token: {token}"
    return tokens, None


def validate_shell_cmd(
    cmd: str,
    allowed_commands: Iterable[str],
    deny_tokens: Iterable[str],
) -> Tuple[bool, Optional[str]]:
    tokens, reason = split_shell_cmd(cmd, allowed_commands, deny_tokens)
    return tokens is not None, reason
