from __future__ import annotations

import os
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from conductor.tools.context import ToolContext
from conductor.tools.sandbox import confine_path


class ReadFileArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(description="File path relative to the workspace root.")
    max_bytes: int | None = Field(default=None, gt=0)


class ListFilesArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(default=".", description="Directory relative to the workspace root.")
    recursive: bool = False
    max_entries: int | None = Field(default=None, gt=0)


class WriteFileArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(description="File path relative to the workspace root.")
    content: str = Field(description="Complete new file contents.")


def read_file(args: ReadFileArgs, context: ToolContext) -> dict[str, Any]:
    resolved = confine_path(context.root, args.path)
    if not resolved.is_file():
        raise ValueError(f"not a file: {args.path}")
    limit = args.max_bytes or context.settings.read_max_bytes
    with resolved.open("rb") as handle:
        data = handle.read(limit + 1)
    truncated = len(data) > limit
    text = data[:limit].decode("utf-8", errors="replace")
    return {"path": args.path, "content": text, "truncated": truncated}


def list_files(args: ListFilesArgs, context: ToolContext) -> dict[str, Any]:
    resolved = confine_path(context.root, args.path)
    if not resolved.is_dir():
        raise ValueError(f"not a directory: {args.path}")
    limit = args.max_entries or context.settings.list_max_entries
    ignore = context.settings.ignore_names
    entries: list[str] = []
    if args.recursive:
        for dirpath, dirnames, filenames in os.walk(resolved):
            dirnames[:] = sorted(name for name in dirnames if name not in ignore)
            for name in sorted(filenames):
                rel = os.path.relpath(os.path.join(dirpath, name), resolved)
                entries.append(rel.replace(os.sep, "/"))
    else:
        for entry in sorted(resolved.iterdir(), key=lambda item: item.name):
            if entry.name in ignore:
                continue
            entries.append(entry.name + "/" if entry.is_dir() else entry.name)
    return {
        "path": args.path,
        "entries": entries[:limit],
        "truncated": len(entries) > limit,
    }


def write_file(args: WriteFileArgs, context: ToolContext) -> dict[str, Any]:
    resolved = confine_path(context.root, args.path)
    if resolved.is_dir():
        raise ValueError(f"path is a directory: {args.path}")
    context.cancel.raise_if_cancelled()
    existed = resolved.exists()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = resolved.with_name(f".{resolved.name}.{uuid.uuid4().hex[:8]}.tmp")
    tmp_path.write_text(args.content, encoding="utf-8")
    tmp_path.replace(resolved)
    return {
        "path": args.path,
        "bytes": len(args.content.encode("utf-8")),
        "created": not existed,
    }
